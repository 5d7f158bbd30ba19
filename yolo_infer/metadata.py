from __future__ import annotations

import ast
from typing import Dict, Mapping, Optional


def load_class_names(metadata_path: str) -> Dict[int, str]:
    """
    Load class names from a lightweight `metadata.yaml` file:

        names:
          0: person
          1: bicycle
          ...

    Parsed by hand so PyYAML is not needed.
    """

    names: Dict[int, str] = {}
    in_names = False

    with open(metadata_path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line == "names:":
                in_names = True
                continue
            if not in_names:
                continue
            if not raw.startswith((" ", "\t")):
                # Next top-level key ends the block.
                break

            if ":" not in line:
                continue
            left, right = line.split(":", 1)
            left = left.strip()
            right = right.strip().strip("'").strip('"')
            if not left.isdigit():
                continue
            names[int(left)] = right

    return names


def class_names_from_metadata(metadata: Optional[Mapping[str, str]]) -> Dict[int, str]:
    """
    Parse the `names` entry exported YOLO models keep in their ONNX custom metadata,
    e.g. "{0: 'person', 1: 'bicycle'}". Returns {} when missing or malformed.
    """

    if not metadata:
        return {}
    raw = metadata.get("names")
    if not raw:
        return {}
    try:
        parsed = ast.literal_eval(raw)
    except (ValueError, SyntaxError):
        return {}

    if isinstance(parsed, dict):
        items = parsed.items()
    elif isinstance(parsed, (list, tuple)):
        items = enumerate(parsed)
    else:
        return {}

    names: Dict[int, str] = {}
    for key, value in items:
        try:
            names[int(key)] = str(value)
        except (TypeError, ValueError):
            continue
    return names
