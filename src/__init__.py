from __future__ import annotations

from . import app, modules

__all__ = ["app", "modules"]
