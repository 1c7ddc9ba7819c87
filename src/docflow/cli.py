"""Console entrypoint.

The CLI is implemented in `docflow.engine.main`.
"""

from __future__ import annotations

from docflow.engine.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
