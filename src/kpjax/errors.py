from __future__ import annotations


class ShapeMismatch(ValueError):
    """Input arrays violate the per-record size or arity contract."""


class DegenerateInput(ValueError):
    """Numeric degeneracy (no visible keypoints, zero scale, zero distance).

    Only raised when the loss runs with ``on_degenerate="raise"``.
    """


class ContextMismatch(RuntimeError):
    """Backward was handed a context produced for a differently shaped batch."""
