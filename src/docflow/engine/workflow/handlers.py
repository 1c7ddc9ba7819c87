"""Action handler registry.

Automated tasks do not implement side effects themselves. Each
`AutomatedTaskType` is mapped to a pluggable handler, a callable
``(config, context) -> output mapping | None``. Sending email, posting to
Slack, updating a DMS, etc. are all external collaborators registered here.

Handlers signal failure by raising; the dispatcher turns that into a failed
task result and applies the task's retry policy.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import requests

from docflow.engine.config import EngineSettings
from docflow.engine.errors import HandlerError, UnregisteredActionError

from .models import AutomatedTaskType
from .task_configs import HttpCallConfig

logger = logging.getLogger(__name__)


class ActionHandler(Protocol):
    def __call__(
        self, config: Mapping[str, Any], context: Mapping[str, Any]
    ) -> Mapping[str, Any] | None: ...


def _key(task_type: AutomatedTaskType | str) -> str:
    raw = getattr(task_type, "value", task_type)
    try:
        return AutomatedTaskType(raw).value
    except ValueError as e:
        raise ValueError(f"Unknown automated task type: {raw!r}") from e


class ActionHandlerRegistry:
    """Thread-safe mapping of automated task type -> handler."""

    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}
        self._lock = threading.Lock()

    def register(self, task_type: AutomatedTaskType | str, handler: ActionHandler) -> None:
        key = _key(task_type)
        with self._lock:
            if key in self._handlers:
                logger.info("Replacing action handler", extra={"task_type": key})
            self._handlers[key] = handler

    def handler(
        self, task_type: AutomatedTaskType | str
    ) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator form of `register`."""

        def _wrap(fn: ActionHandler) -> ActionHandler:
            self.register(task_type, fn)
            return fn

        return _wrap

    def unregister(self, task_type: AutomatedTaskType | str) -> None:
        with self._lock:
            self._handlers.pop(_key(task_type), None)

    def get(self, task_type: AutomatedTaskType | str) -> ActionHandler:
        key = _key(task_type)
        with self._lock:
            handler = self._handlers.get(key)
        if handler is None:
            raise UnregisteredActionError(key)
        return handler

    def __contains__(self, task_type: object) -> bool:
        try:
            key = _key(task_type)  # type: ignore[arg-type]
        except ValueError:
            return False
        with self._lock:
            return key in self._handlers

    def registered_types(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)


class HttpActionHandler:
    """Calls an HTTP endpoint for `api_call` / `trigger_webhook` tasks.

    The request body is the task's `payload` config, or the run context when no
    payload is configured. Non-2xx responses raise, so the task's retry policy
    applies.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", "docflow")

    def __call__(self, config: Mapping[str, Any], context: Mapping[str, Any]) -> dict[str, Any]:
        cfg = HttpCallConfig.model_validate(dict(config))
        if cfg.url is None:
            raise HandlerError("HTTP action requires a 'url' in its config")

        body: Any = None
        if cfg.method != "GET":
            body = cfg.payload if cfg.payload is not None else {"context": _json_safe(context)}

        logger.info("Calling HTTP action", extra={"method": cfg.method, "url": cfg.url})
        resp = self._session.request(
            cfg.method, cfg.url, json=body, headers=cfg.headers or None, timeout=self._timeout
        )
        resp.raise_for_status()

        output: dict[str, Any] = {"status_code": resp.status_code}
        try:
            output["response"] = resp.json()
        except ValueError:
            output["response"] = resp.text
        return output

    def close(self) -> None:
        self._session.close()


def _json_safe(value: Mapping[str, Any]) -> Any:
    return json.loads(json.dumps(dict(value), default=str))


def build_default_registry(settings: EngineSettings | None = None) -> ActionHandlerRegistry:
    """Registry with the built-in handlers (HTTP calls for api_call/trigger_webhook)."""

    timeout = settings.http_timeout_seconds if settings is not None else 30.0
    registry = ActionHandlerRegistry()
    http = HttpActionHandler(timeout_seconds=timeout)
    registry.register(AutomatedTaskType.API_CALL, http)
    registry.register(AutomatedTaskType.TRIGGER_WEBHOOK, http)
    return registry
