"""Workflow Executor: runs one attempt of a job.

Takes a workflow definition and a job context and executes the steps
strictly in order, dispatching each step kind to its collaborator:

- query      data layer (create / update / delete / find)
- webhook    resilient HTTP client
- notify     notification service
- email      email service
- plugin     plugin registry, with a read-only call context
- delay      non-blocking sleep
- condition  evaluates ``if`` and runs the ``then`` or ``else`` branch
- loop       runs ``do`` steps once per item

The first step that raises stops the attempt. Collaborator failures are
wrapped in StepExecutionError and returned inside ExecutionResult, never
raised, so the queue can apply retry policy. Cancellation
(asyncio.CancelledError) is not intercepted: it propagates out of the
awaited collaborator call and no further step starts.
"""

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from core.exceptions import (
    CollaboratorNotConfiguredError,
    StepExecutionError,
    ValidationError,
)
from workflow.conditions import evaluate_condition
from workflow.expressions import ExpressionEvaluator
from workflow.models import (
    ConditionStep,
    DelayStep,
    EmailStep,
    EntityEvent,
    ExecutionResult,
    LoopStep,
    NotifyStep,
    PluginStep,
    QueryStep,
    WebhookStep,
    Workflow,
    WorkflowContext,
    WorkflowLog,
)
from workflow.ports import (
    DataLayer,
    EmailService,
    HttpClient,
    NotificationService,
    PluginCallContext,
    PluginRegistry,
)

logger = structlog.get_logger(__name__)

EntityEventCallback = Callable[[EntityEvent], Awaitable[None]]


@dataclass
class _Run:
    """Mutable state of a single execution attempt."""
    workflow: Workflow
    context: WorkflowContext
    job_id: Optional[str]
    variables: dict[str, Any]
    logs: list[WorkflowLog] = field(default_factory=list)

    def namespace(self) -> dict[str, Any]:
        namespace = self.context.to_dict()
        namespace["variables"] = self.variables
        return namespace

    def resolve(self, value: Any) -> Any:
        return ExpressionEvaluator.resolve(value, self.namespace())

    def log(self, level: str, message: str, data: Any = None) -> None:
        self.logs.append(WorkflowLog(level=level, message=message, data=data))

    def child(self, extra: dict[str, Any]) -> "_Run":
        """Run sharing logs but with extra loop variables layered on top."""
        return _Run(
            workflow=self.workflow,
            context=self.context,
            job_id=self.job_id,
            variables={**self.variables, **extra},
            logs=self.logs,
        )


class WorkflowExecutor:
    """Executes workflow steps against injected collaborators."""

    def __init__(
        self,
        data_layer: Optional[DataLayer] = None,
        http_client: Optional[HttpClient] = None,
        notification_service: Optional[NotificationService] = None,
        email_service: Optional[EmailService] = None,
        plugin_registry: Optional[PluginRegistry] = None,
        on_entity_event: Optional[EntityEventCallback] = None,
    ):
        self._data_layer = data_layer
        self._http_client = http_client
        self._notification_service = notification_service
        self._email_service = email_service
        self._plugin_registry = plugin_registry
        self._on_entity_event = on_entity_event

        self._handlers: dict[str, Callable[[Any, _Run], Awaitable[Any]]] = {
            "query": self._execute_query,
            "webhook": self._execute_webhook,
            "notify": self._execute_notify,
            "email": self._execute_email,
            "plugin": self._execute_plugin,
            "delay": self._execute_delay,
            "condition": self._execute_condition,
            "loop": self._execute_loop,
        }

    def set_entity_event_callback(self, callback: Optional[EntityEventCallback]) -> None:
        self._on_entity_event = callback

    async def execute(
        self,
        workflow: Workflow,
        context: WorkflowContext,
        job_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Run every step of workflow in order.

        Args:
            workflow: Definition to run
            context: Job input; its variables are copied, never mutated
            job_id: Owning job, for logs and plugin call contexts

        Returns:
            ExecutionResult with the final variables on success, or the
            wrapped step error on failure
        """
        run = _Run(
            workflow=workflow,
            context=context,
            job_id=job_id,
            variables=copy.deepcopy(context.variables or {}),
        )
        run.log("info", f"Starting workflow: {workflow.name}")

        try:
            await self._execute_steps(workflow.steps, run)
        except StepExecutionError as e:
            run.log("error", f"Workflow failed: {e}", {"step_index": e.step_index, "step_type": e.step_type})
            logger.warning(
                "Workflow attempt failed",
                workflow=workflow.name,
                job_id=job_id,
                step_index=e.step_index,
                step_type=e.step_type,
                error=str(e.cause),
            )
            return ExecutionResult(success=False, error=e, logs=run.logs)

        run.log("info", f"Workflow completed: {workflow.name}")
        return ExecutionResult(success=True, result=run.variables, logs=run.logs)

    async def _execute_steps(self, steps: list, run: _Run) -> list[Any]:
        results = []
        for index, step in enumerate(steps):
            run.log("debug", f"Executing step {index + 1}/{len(steps)}: {step.type}")
            try:
                result = await self._execute_step(step, run)
            except StepExecutionError:
                # Raised inside a nested branch; already carries its own step
                raise
            except Exception as e:
                run.log("error", f"Step {index + 1} failed: {e}")
                raise StepExecutionError(index, step.type, e) from e

            if step.assign_to and result is not None:
                run.variables[step.assign_to] = result
                run.log("debug", f"Assigned result to variable: {step.assign_to}")
            results.append(result)
        return results

    async def _execute_step(self, step: Any, run: _Run) -> Any:
        handler = self._handlers.get(step.type)
        if handler is None:
            raise ValidationError(f"Unknown step type: {step.type}")
        return await handler(step, run)

    # ─── Step handlers ────────────────────────────────────────

    async def _execute_query(self, step: QueryStep, run: _Run) -> Any:
        if self._data_layer is None:
            raise CollaboratorNotConfiguredError("Data layer")

        data = run.resolve(step.data) if step.data is not None else None
        where = run.resolve(step.where) if step.where is not None else None

        if step.action == "create":
            if not data:
                raise ValidationError("Create action requires data")
            created = await self._data_layer.create(step.entity, data)
            await self._emit_entity_event(step.entity, "create", None, created, run)
            return created

        if step.action == "update":
            if not data:
                raise ValidationError("Update action requires data")
            target_id = _extract_id(where)
            if not target_id:
                raise ValidationError("Update action requires an id in the where clause")
            before = await self._data_layer.find_by_id(step.entity, target_id)
            updated = await self._data_layer.update(step.entity, target_id, data)
            await self._emit_entity_event(step.entity, "update", before, updated, run)
            return updated

        if step.action == "delete":
            target_id = _extract_id(where)
            if not target_id:
                raise ValidationError("Delete action requires an id in the where clause")
            before = await self._data_layer.find_by_id(step.entity, target_id)
            await self._data_layer.delete(step.entity, target_id)
            await self._emit_entity_event(step.entity, "delete", before or {"id": target_id}, None, run)
            return {"deleted": True, "id": target_id}

        return await self._data_layer.execute({"entity": step.entity, "where": where})

    async def _execute_webhook(self, step: WebhookStep, run: _Run) -> Any:
        if self._http_client is None:
            raise CollaboratorNotConfiguredError("HTTP client")

        url = run.resolve(step.url)
        if not isinstance(url, str):
            raise ValidationError(f"Webhook url must resolve to a string, got {type(url).__name__}")

        return await self._http_client.request(
            url,
            method=step.method,
            headers=run.resolve(step.headers),
            body=run.resolve(step.payload) if step.payload is not None else None,
            signing_secret=step.secret,
        )

    async def _execute_notify(self, step: NotifyStep, run: _Run) -> None:
        if self._notification_service is None:
            raise CollaboratorNotConfiguredError("Notification service")

        fields = {
            "channel": step.channel,
            "to": step.to,
            "subject": step.subject,
            "body": step.body,
            "template": step.template,
            "params": step.params,
            "metadata": step.metadata,
        }
        payload = {key: run.resolve(value) for key, value in fields.items() if value is not None}
        await self._notification_service.send(step.adapter, payload)

    async def _execute_email(self, step: EmailStep, run: _Run) -> None:
        if self._email_service is None:
            raise CollaboratorNotConfiguredError("Email service")

        await self._email_service.send(
            run.resolve(step.to),
            run.resolve(step.subject),
            run.resolve(step.body),
            step.template,
        )

    async def _execute_plugin(self, step: PluginStep, run: _Run) -> Any:
        if self._plugin_registry is None:
            raise CollaboratorNotConfiguredError("Plugin registry")

        call_context = PluginCallContext(
            workflow_name=run.workflow.name,
            job_id=run.job_id,
            variables=copy.deepcopy(run.variables),
            session=run.context.session,
        )
        return await self._plugin_registry.invoke(
            step.plugin,
            step.action_name,
            run.resolve(step.params),
            call_context,
        )

    async def _execute_delay(self, step: DelayStep, run: _Run) -> None:
        raw = run.resolve(step.duration)
        try:
            duration_ms = float(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid delay duration: {step.duration!r}")
        if duration_ms < 0:
            raise ValidationError(f"Invalid delay duration: {step.duration!r}")

        await asyncio.sleep(duration_ms / 1000)

    async def _execute_condition(self, step: ConditionStep, run: _Run) -> dict[str, Any]:
        matched = evaluate_condition(step.if_, run.namespace())
        branch = step.then if matched else step.else_
        run.log("debug", f"Condition evaluated to {matched}", {"branch_steps": len(branch)})
        if branch:
            await self._execute_steps(branch, run)
        return {"matched": matched, "branch": "then" if matched else "else"}

    async def _execute_loop(self, step: LoopStep, run: _Run) -> list[Any]:
        items = run.resolve(step.items)
        if not isinstance(items, list):
            raise ValidationError(f"Loop items must be a list, got: {type(items).__name__}")

        results: list[Any] = []
        for index, item in enumerate(items):
            iteration = run.child({"item": item, "index": index})
            results.extend(await self._execute_steps(step.do, iteration))
        return results

    async def _emit_entity_event(
        self, entity: str, event: str, before: Any, after: Any, run: _Run
    ) -> None:
        if self._on_entity_event is None:
            return

        chain = run.variables.get("_chain") or {}
        await self._on_entity_event(EntityEvent(
            entity=entity,
            event=event,
            before=before,
            after=after,
            source_workflow=run.workflow.name,
            depth=int(chain.get("depth", 0)),
        ))


def _extract_id(where: Any) -> Optional[str]:
    if where is None:
        return None
    if isinstance(where, (str, int)):
        return str(where)
    if isinstance(where, dict) and where.get("id") is not None:
        return str(where["id"])
    return None
