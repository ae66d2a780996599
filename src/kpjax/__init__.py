"""kpjax main package.

Normalized keypoint-localization loss with an analytic gradient, a thin layer
adapter, a finite-difference gradient checker, and FashionAI-style evaluation.
Install from the repo root and use via `kpjax.*` and `python -m kpjax.cli.*`.
"""

__all__ = [
    "__version__",
]

__version__ = "0.1.0"
