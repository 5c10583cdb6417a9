"""Workflow Manager: the engine's entry point.

Wires the trigger matcher, the job queue and the executor together:

    manager = WorkflowManager(data_layer=db, notification_service=notifier)
    manager.register_workflow({...})

    jobs = manager.trigger_entity_event("Request", "update", {"before": old, "after": new})
    job = manager.trigger("nightly-report", {"date": "2024-01-01"})

Entity mutations made by ``query`` steps are fed back into the matcher so
workflows can chain. Each hop increments ``variables._chain.depth``;
events past ``max_event_depth`` are dropped.
"""

from typing import Any, Optional, Union

import structlog

from app.config import Settings, get_settings
from integrations.http_client import HttpClientConfig, ResilientHttpClient
from workflow.events import EventStream
from workflow.executor import WorkflowExecutor
from workflow.models import EntityEvent, JobStatus, Workflow, WorkflowJob
from workflow.ports import (
    DataLayer,
    EmailService,
    HttpClient,
    NotificationService,
    PluginRegistry,
)
from workflow.queue import QueueOptions, WorkflowQueue
from workflow.triggers import Match, TriggerMatcher

logger = structlog.get_logger(__name__)


class WorkflowManager:
    """Registers workflows, turns events into jobs and exposes job control."""

    def __init__(
        self,
        data_layer: Optional[DataLayer] = None,
        http_client: Optional[HttpClient] = None,
        notification_service: Optional[NotificationService] = None,
        email_service: Optional[EmailService] = None,
        plugin_registry: Optional[PluginRegistry] = None,
        options: Optional[QueueOptions] = None,
        max_event_depth: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            data_layer: Backing store for query steps
            http_client: Client for webhook steps (a ResilientHttpClient
                built from settings when omitted, closed on shutdown)
            notification_service: Target of notify steps
            email_service: Target of email steps
            plugin_registry: Host for plugin steps
            options: Scheduler limits (defaults to values from settings)
            max_event_depth: Longest allowed chain of entity events
            settings: Settings override, mostly for tests
        """
        settings = settings or get_settings()

        self._owns_http_client = http_client is None
        if http_client is None:
            http_client = ResilientHttpClient(HttpClientConfig.from_settings(settings))

        self.matcher = TriggerMatcher()
        self.executor = WorkflowExecutor(
            data_layer=data_layer,
            http_client=http_client,
            notification_service=notification_service,
            email_service=email_service,
            plugin_registry=plugin_registry,
            on_entity_event=self._on_entity_event,
        )
        self.queue = WorkflowQueue(
            self.executor.execute,
            options or QueueOptions.from_settings(settings),
        )
        self.max_event_depth = (
            max_event_depth if max_event_depth is not None else settings.WORKFLOW_MAX_EVENT_DEPTH
        )
        self._http_client = http_client

    @property
    def events(self) -> EventStream:
        return self.queue.events

    # ─── Registry ─────────────────────────────────────────────

    def register_workflow(self, workflow: Union[Workflow, dict[str, Any]]) -> Workflow:
        return self.queue.register_workflow(workflow)

    def unregister_workflow(self, name: str) -> bool:
        return self.queue.unregister_workflow(name)

    def get_workflow(self, name: str) -> Optional[Workflow]:
        return self.queue.get_workflow(name)

    def get_all_workflows(self) -> list[Workflow]:
        return self.queue.get_all_workflows()

    # ─── Triggers ─────────────────────────────────────────────

    def trigger(self, workflow_name: str, data: Any = None, session: Any = None) -> WorkflowJob:
        """Run a workflow by name, bypassing trigger matching.

        Raises:
            WorkflowNotFoundError: Unknown workflow
            WorkflowDisabledError: Workflow is disabled
        """
        context = self.matcher.build_manual_context(data, session)
        return self.queue.enqueue(workflow_name, context)

    def trigger_entity_event(
        self,
        entity: str,
        event: str,
        data: Any,
        chain: Optional[dict[str, Any]] = None,
    ) -> list[WorkflowJob]:
        """Enqueue one job per workflow whose entity trigger matches.

        Args:
            entity: Entity name, e.g. "Request"
            event: "create" | "update" | "delete"
            data: {"before": ..., "after": ...} or a bare record
            chain: Propagation metadata for chained events
        """
        matches = self.matcher.match_entity_event(
            self.queue.get_all_workflows(), entity, event, data, chain
        )
        if matches:
            logger.info(
                "Entity event matched workflows",
                entity=entity,
                trigger_event=event,
                workflows=[workflow.name for workflow, _ in matches],
            )
        return self._enqueue_matches(matches)

    def trigger_webhook(self, path: str, request: Optional[dict[str, Any]] = None) -> list[WorkflowJob]:
        matches = self.matcher.match_webhook(self.queue.get_all_workflows(), path, request)
        return self._enqueue_matches(matches)

    def trigger_schedule(self, cron_expression: str) -> list[WorkflowJob]:
        matches = self.matcher.match_schedule(self.queue.get_all_workflows(), cron_expression)
        return self._enqueue_matches(matches)

    def _enqueue_matches(self, matches: list[Match]) -> list[WorkflowJob]:
        return [self.queue.enqueue(workflow.name, context) for workflow, context in matches]

    async def _on_entity_event(self, event: EntityEvent) -> None:
        depth = event.depth + 1
        if depth > self.max_event_depth:
            logger.warning(
                "Entity event chain too deep, dropping event",
                entity=event.entity,
                trigger_event=event.event,
                source_workflow=event.source_workflow,
                depth=depth,
                max_depth=self.max_event_depth,
            )
            return

        self.trigger_entity_event(
            event.entity,
            event.event,
            {"before": event.before, "after": event.after},
            chain={"depth": depth, "source_workflow": event.source_workflow},
        )

    # ─── Job control ──────────────────────────────────────────

    def get_job(self, job_id: str) -> Optional[WorkflowJob]:
        return self.queue.get_job(job_id)

    def get_jobs(
        self,
        status: Optional[Union[JobStatus, str]] = None,
        workflow_name: Optional[str] = None,
    ) -> list[WorkflowJob]:
        return self.queue.get_jobs(status, workflow_name)

    def cancel_job(self, job_id: str) -> bool:
        return self.queue.cancel(job_id)

    def retry_job(self, job_id: str) -> bool:
        return self.queue.retry(job_id)

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> WorkflowJob:
        return await self.queue.wait_for(job_id, timeout)

    def cleanup(self, older_than_ms: int = 3600000) -> int:
        return self.queue.cleanup(older_than_ms)

    def get_stats(self) -> dict[str, int]:
        return self.queue.get_stats()

    async def shutdown(self, timeout_ms: int = 30000) -> None:
        await self.queue.shutdown(timeout_ms)
        if self._owns_http_client:
            await self._http_client.aclose()
