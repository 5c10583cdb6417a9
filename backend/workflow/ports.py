"""Collaborator interfaces consumed by the workflow executor.

The engine is agnostic to the concrete data store, notification fan-out,
mail transport and plugin host. Anything structurally matching these
protocols can be injected.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol


class DataLayer(Protocol):
    """Entity CRUD against the backing store. Used by ``query`` steps."""

    async def execute(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        ...

    async def find_by_id(self, entity: str, id: str) -> Optional[dict[str, Any]]:
        ...

    async def create(self, entity: str, data: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update(self, entity: str, id: str, data: dict[str, Any]) -> dict[str, Any]:
        ...

    async def delete(self, entity: str, id: str) -> Any:
        ...


class NotificationService(Protocol):
    """Fan-out to chat/email channels. Used by ``notify`` steps."""

    async def send(self, adapter: Optional[str], payload: dict[str, Any]) -> Any:
        ...


class EmailService(Protocol):
    """Mail transport. Used by ``email`` steps."""

    async def send(self, to: str, subject: str, body: str, template: Optional[str] = None) -> Any:
        ...


class HttpClient(Protocol):
    """Outbound HTTP. Used by ``webhook`` steps."""

    async def request(
        self,
        url: str,
        method: str = "POST",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        signing_secret: Optional[str] = None,
    ) -> Any:
        ...


@dataclass(frozen=True)
class PluginCallContext:
    """Read-only view handed to a plugin action for a single call.

    Plugins never receive the live execution context; they see a copy of
    the variables and the acting session only.
    """
    workflow_name: str
    job_id: Optional[str]
    variables: dict[str, Any] = field(default_factory=dict)
    session: Any = None


class PluginRegistry(Protocol):
    """Plugin/action host. Used by ``plugin`` steps."""

    async def invoke(
        self,
        plugin: str,
        action: str,
        params: dict[str, Any],
        context: PluginCallContext,
    ) -> Any:
        ...
