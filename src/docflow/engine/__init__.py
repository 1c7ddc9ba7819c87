"""Workflow engine: configuration, logging, errors and the workflow runtime."""

from docflow.engine.config import EngineSettings

__all__ = ["EngineSettings"]
