"""Type aliases used throughout cryptstore."""

from __future__ import annotations

from typing import BinaryIO

WritableContent = BinaryIO | bytes
Extras = dict[str, object]
