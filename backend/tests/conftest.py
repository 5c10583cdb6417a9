"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- In-memory fakes for every executor collaborator (data layer,
  notifications, email, plugins, HTTP)
- Queue options with millisecond-scale delays
- A WorkflowManager wired to the fakes
"""

import os
from typing import Any, Optional
from uuid import uuid4

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from workflow.manager import WorkflowManager  # noqa: E402
from workflow.models import TriggerInfo, TriggerType, WorkflowContext  # noqa: E402
from workflow.ports import PluginCallContext  # noqa: E402
from workflow.queue import QueueOptions  # noqa: E402


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeDataLayer:
    """Dict-backed entity store that records every call."""

    def __init__(self):
        self.records: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple] = []

    def seed(self, entity: str, record: dict[str, Any]) -> dict[str, Any]:
        self.records.setdefault(entity, {})[str(record["id"])] = dict(record)
        return record

    async def execute(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        self.calls.append(("execute", query))
        where = query.get("where") or {}
        rows = self.records.get(query["entity"], {}).values()
        return [dict(r) for r in rows if all(r.get(k) == v for k, v in where.items())]

    async def find_by_id(self, entity: str, id: str) -> Optional[dict[str, Any]]:
        self.calls.append(("find_by_id", entity, id))
        record = self.records.get(entity, {}).get(id)
        return dict(record) if record else None

    async def create(self, entity: str, data: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create", entity, data))
        record = {"id": data.get("id", uuid4().hex[:8]), **data}
        return dict(self.seed(entity, record))

    async def update(self, entity: str, id: str, data: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("update", entity, id, data))
        record = self.records.setdefault(entity, {}).setdefault(id, {"id": id})
        record.update(data)
        return dict(record)

    async def delete(self, entity: str, id: str) -> None:
        self.calls.append(("delete", entity, id))
        self.records.get(entity, {}).pop(id, None)


class FakeNotificationService:
    def __init__(self):
        self.sent: list[tuple[Optional[str], dict[str, Any]]] = []

    async def send(self, adapter: Optional[str], payload: dict[str, Any]) -> None:
        self.sent.append((adapter, payload))


class FakeEmailService:
    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def send(self, to: str, subject: str, body: str, template: Optional[str] = None) -> None:
        self.sent.append({"to": to, "subject": subject, "body": body, "template": template})


class FakePluginRegistry:
    """Plugin host whose actions are plain async callables(params, context)."""

    def __init__(self):
        self.actions: dict[tuple[str, str], Any] = {}
        self.calls: list[tuple[str, str, dict, PluginCallContext]] = []

    def register(self, plugin: str, action: str, handler) -> None:
        self.actions[(plugin, action)] = handler

    async def invoke(self, plugin: str, action: str, params: dict, context: PluginCallContext) -> Any:
        self.calls.append((plugin, action, params, context))
        handler = self.actions.get((plugin, action))
        if handler is None:
            raise LookupError(f"Unknown plugin action: {plugin}.{action}")
        return await handler(params, context)


class FakeHttpClient:
    """Records webhook requests and returns a canned response."""

    def __init__(self, response: Any = None):
        self.response = response if response is not None else {"ok": True}
        self.requests: list[dict[str, Any]] = []

    async def request(self, url, method="POST", headers=None, body=None, signing_secret=None):
        self.requests.append({
            "url": url,
            "method": method,
            "headers": headers,
            "body": body,
            "signing_secret": signing_secret,
        })
        return self.response


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def data_layer() -> FakeDataLayer:
    return FakeDataLayer()


@pytest.fixture
def notification_service() -> FakeNotificationService:
    return FakeNotificationService()


@pytest.fixture
def email_service() -> FakeEmailService:
    return FakeEmailService()


@pytest.fixture
def plugin_registry() -> FakePluginRegistry:
    return FakePluginRegistry()


@pytest.fixture
def http_client() -> FakeHttpClient:
    return FakeHttpClient()


@pytest.fixture
def fast_options() -> QueueOptions:
    """Queue options with delays short enough for real-time tests."""
    return QueueOptions(
        max_concurrent=2,
        max_retries=3,
        retry_delay_ms=10,
        backoff_multiplier=2.0,
        max_retry_delay_ms=100,
        job_timeout_ms=1000,
    )


@pytest_asyncio.fixture
async def manager(
    data_layer, http_client, notification_service, email_service, plugin_registry, fast_options
):
    """WorkflowManager wired to the in-memory fakes."""
    manager = WorkflowManager(
        data_layer=data_layer,
        http_client=http_client,
        notification_service=notification_service,
        email_service=email_service,
        plugin_registry=plugin_registry,
        options=fast_options,
        max_event_depth=3,
    )
    yield manager
    await manager.shutdown(timeout_ms=100)


def manual_context(variables: Optional[dict[str, Any]] = None) -> WorkflowContext:
    """Bare manual-trigger context for queue and executor tests."""
    return WorkflowContext(
        trigger=TriggerInfo(type=TriggerType.MANUAL),
        variables=variables or {},
    )
