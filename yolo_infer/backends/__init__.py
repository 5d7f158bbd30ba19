"""
Inference backends for yolo_infer.

Backends are kept in a separate module so the core (letterbox, decode, NMS,
result ownership) stays importable without an inference runtime installed.
"""

from __future__ import annotations

__all__ = []
