"""FastAPI server adapter for docflow.

Design intent:
- Keep workflow semantics in `docflow.engine.*`
- Keep server-specific concerns (routing, CORS, tracking live runs) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from docflow.server.app import create_app
