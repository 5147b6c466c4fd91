"""dual_nback package

Trial engine, scoring and adaptive difficulty for a dual n-back trainer.
The pygame shell lives in ``dual_nback.app``; run it with ``python -m dual_nback``.
"""

__all__ = [
    "__version__",
]

__version__ = "1.0.0"
