"""docflow: document workflow engine.

Provides:
- a declarative workflow model (trigger, steps, human/automated tasks, rules)
- a runner that walks the step graph and dispatches tasks
- a run controller (start, pause, resume, step forward, reset, cancel)
- structured logging and configuration loaded from `.env`
"""

__version__ = "0.1.0"

from docflow.engine.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
