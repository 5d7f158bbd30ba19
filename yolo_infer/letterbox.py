from typing import Optional, Tuple

import numpy as np

from .errors import InvalidArgumentError
from .types import GeometricTransform

# YOLO padding gray, already normalized.
PAD_VALUE = 114.0 / 255.0


def as_rgba(data, width: Optional[int] = None, height: Optional[int] = None) -> np.ndarray:
    """
    Return `data` as an (H, W, 4) uint8 RGBA array.

    Accepts an (H, W, 4) array directly, or a flat buffer (bytes, memoryview,
    1-D array) together with its width and height.
    """

    if data is None:
        raise InvalidArgumentError("image data is None")

    if isinstance(data, np.ndarray) and data.ndim == 3:
        image = data
    else:
        if width is None or height is None:
            raise InvalidArgumentError("width and height are required for flat image buffers")
        flat = np.frombuffer(data, dtype=np.uint8) if not isinstance(data, np.ndarray) else data.reshape(-1)
        expected = int(width) * int(height) * 4
        if width <= 1 or height <= 1:
            raise InvalidArgumentError(f"invalid image size ({width} x {height})")
        if flat.size < expected:
            raise InvalidArgumentError(f"image buffer too small: got {flat.size} bytes, expected {expected}")
        image = flat[:expected].reshape(int(height), int(width), 4)

    if image.ndim != 3 or image.shape[2] != 4:
        raise InvalidArgumentError(f"Expected RGBA image shape (H, W, 4), got {image.shape}")
    if image.dtype != np.uint8:
        raise InvalidArgumentError(f"Expected uint8 pixels, got {image.dtype}")
    if width is not None and height is not None and (image.shape[1], image.shape[0]) != (width, height):
        raise InvalidArgumentError(
            f"image shape {image.shape[1]}x{image.shape[0]} does not match declared size {width}x{height}"
        )
    h, w = image.shape[:2]
    if w <= 1 or h <= 1:
        raise InvalidArgumentError(f"invalid image size ({w} x {h})")
    return image


def compute_transform(src_width: int, src_height: int, target_width: int, target_height: int) -> GeometricTransform:
    """
    Letterbox geometry for a src image inside a target canvas.

    scale = min(tw / sw, th / sh); the binding axis is chosen with an exact integer
    comparison so the scaled image always spans it completely.
    """

    if target_width <= 0 or target_height <= 0:
        raise InvalidArgumentError(f"invalid target size ({target_width} x {target_height})")
    if src_width <= 1 or src_height <= 1:
        raise InvalidArgumentError(f"invalid image size ({src_width} x {src_height})")

    if target_width * src_height <= target_height * src_width:
        scale = target_width / src_width
        new_w = target_width
        new_h = min(target_height, int(src_height * scale))
    else:
        scale = target_height / src_height
        new_h = target_height
        new_w = min(target_width, int(src_width * scale))

    pad_left = (target_width - new_w) // 2
    pad_top = (target_height - new_h) // 2
    return GeometricTransform(scale=scale, pad_left=pad_left, pad_top=pad_top, new_width=new_w, new_height=new_h)


def _sample_grid(count: int, scale: float, src_size: int) -> Tuple[np.ndarray, np.ndarray]:
    # Source index + interpolation fraction per destination pixel. Reads past the
    # last row/column clamp to size - 2 with fraction 1.0 (nearest at the edge).
    pos = np.arange(count, dtype=np.float64) / scale
    idx = pos.astype(np.intp)
    frac = (pos - idx).astype(np.float32)
    edge = idx >= src_size - 1
    idx[edge] = src_size - 2
    frac[edge] = 1.0
    return idx, frac


def letterbox_into(
    image: np.ndarray,
    target_width: int,
    target_height: int,
    out: Optional[np.ndarray] = None,
    pad_value: float = PAD_VALUE,
) -> Tuple[np.ndarray, GeometricTransform]:
    """
    Letterbox an RGBA image into a planar RGB float buffer of shape (3, th, tw).

    Returns:
        out: the filled buffer (written in place when `out` is given)
        transform: scale + padding needed to map model coordinates back
    """

    image = as_rgba(image)
    src_h, src_w = image.shape[:2]
    transform = compute_transform(src_w, src_h, target_width, target_height)

    if out is None:
        out = np.empty((3, target_height, target_width), dtype=np.float32)
    elif out.shape != (3, target_height, target_width):
        raise InvalidArgumentError(f"output buffer shape {out.shape} != {(3, target_height, target_width)}")

    out.fill(pad_value)

    new_w, new_h = transform.new_width, transform.new_height
    if new_w == 0 or new_h == 0:
        return out, transform

    y0, fy = _sample_grid(new_h, transform.scale, src_h)
    x0, fx = _sample_grid(new_w, transform.scale, src_w)

    rgb = image[:, :, :3]
    top = rgb[y0]
    bottom = rgb[y0 + 1]
    v00 = top[:, x0].astype(np.float32) / 255.0
    v01 = top[:, x0 + 1].astype(np.float32) / 255.0
    v10 = bottom[:, x0].astype(np.float32) / 255.0
    v11 = bottom[:, x0 + 1].astype(np.float32) / 255.0

    fx = fx[None, :, None]
    fy = fy[:, None, None]
    v0 = v00 * (1 - fx) + v01 * fx
    v1 = v10 * (1 - fx) + v11 * fx
    v = v0 * (1 - fy) + v1 * fy

    # HWC -> CHW into the scaled window
    top_i, left_i = transform.pad_top, transform.pad_left
    out[:, top_i : top_i + new_h, left_i : left_i + new_w] = np.transpose(v, (2, 0, 1))
    return out, transform
