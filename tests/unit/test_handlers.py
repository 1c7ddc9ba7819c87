from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from docflow.engine.errors import HandlerError, UnregisteredActionError
from docflow.engine.workflow.handlers import (
    ActionHandlerRegistry,
    HttpActionHandler,
    build_default_registry,
)
from docflow.engine.workflow.models import AutomatedTaskType


def _session(status_code: int = 200, body: object = None) -> MagicMock:
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    resp = MagicMock()
    resp.status_code = status_code
    if body is None:
        resp.json.side_effect = ValueError("no json")
        resp.text = "ok"
    else:
        resp.json.return_value = body
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    session.request.return_value = resp
    return session


def test_registry_register_and_get() -> None:
    registry = ActionHandlerRegistry()

    @registry.handler("send_email")
    def send(config, context):
        return {"sent": True}

    assert registry.get(AutomatedTaskType.SEND_EMAIL) is send
    assert "send_email" in registry
    assert "not_a_task_type" not in registry
    assert registry.registered_types() == ["send_email"]

    registry.unregister("send_email")
    with pytest.raises(UnregisteredActionError):
        registry.get("send_email")


def test_registry_rejects_unknown_task_types() -> None:
    with pytest.raises(ValueError):
        ActionHandlerRegistry().register("teleport_document", lambda c, ctx: None)


def test_default_registry_covers_http_actions() -> None:
    registry = build_default_registry()

    assert registry.registered_types() == ["api_call", "trigger_webhook"]


def test_http_handler_posts_context_when_no_payload() -> None:
    session = _session(body={"accepted": True})
    handler = HttpActionHandler(timeout_seconds=5, session=session)

    output = handler(
        {"url": "https://hooks.example.com/doc", "method": "post"}, {"documentId": "d1"}
    )

    assert output == {"status_code": 200, "response": {"accepted": True}}
    session.request.assert_called_once_with(
        "POST",
        "https://hooks.example.com/doc",
        json={"context": {"documentId": "d1"}},
        headers=None,
        timeout=5,
    )
    assert session.headers["User-Agent"] == "docflow"


def test_http_handler_sends_configured_payload_and_headers() -> None:
    session = _session()
    handler = HttpActionHandler(session=session)

    output = handler(
        {
            "url": "https://hris.example.com/accounts",
            "method": "PUT",
            "headers": {"X-Token": "t"},
            "payload": {"user": "ada"},
        },
        {},
    )

    assert output["response"] == "ok"
    _, kwargs = session.request.call_args
    assert kwargs["json"] == {"user": "ada"}
    assert kwargs["headers"] == {"X-Token": "t"}


def test_http_handler_get_has_no_body() -> None:
    session = _session(body=[])
    HttpActionHandler(session=session)({"url": "https://example.com", "method": "GET"}, {"a": 1})

    _, kwargs = session.request.call_args
    assert kwargs["json"] is None


def test_http_handler_requires_url() -> None:
    handler = HttpActionHandler(session=_session())

    with pytest.raises(HandlerError):
        handler({"service": "gsuite", "action": "create_account"}, {})


def test_http_handler_raises_on_error_status() -> None:
    handler = HttpActionHandler(session=_session(status_code=503))

    with pytest.raises(requests.HTTPError):
        handler({"url": "https://example.com"}, {})
