"""Trigger matching.

Decides which registered workflows an incoming event instantiates and
builds the WorkflowContext each resulting job runs against. Matching is
pure and synchronous: unmatched events simply produce no matches.
"""

import copy
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import structlog

from workflow.conditions import MISSING, evaluate_condition, get_value_by_path
from workflow.models import (
    TriggerInfo,
    TriggerType,
    Workflow,
    WorkflowContext,
)

logger = structlog.get_logger(__name__)

SNAPSHOT_KEYS = ("before", "after")

Match = tuple[Workflow, WorkflowContext]


def split_entity_data(event: str, data: Any) -> tuple[Any, Any, Any]:
    """Normalize entity event data into (before, after, flat record).

    Accepts either ``{"before": ..., "after": ...}`` or a bare record
    (legacy). A bare record is the new state for create/update and the
    deleted record for delete.
    """
    is_snapshot_form = (
        isinstance(data, dict)
        and data
        and set(data) <= set(SNAPSHOT_KEYS)
    )
    if is_snapshot_form:
        before, after = data.get("before"), data.get("after")
    elif event == "delete":
        before, after = data, None
    else:
        before, after = None, data

    flat = before if event == "delete" else after
    return before, after, flat


def _entity_resolver(before: Any, after: Any, flat: Any):
    """Resolve condition keys for entity triggers.

    Keys whose first segment is ``before``/``after`` read the snapshots;
    any other key reads the flat record (legacy bare-field conditions).
    """
    snapshots = {"before": before, "after": after}

    def resolve(_data: Any, key: str) -> Any:
        head, _, rest = key.partition(".")
        if head in snapshots:
            snapshot = snapshots[head]
            if not rest:
                return MISSING if snapshot is None else snapshot
            return get_value_by_path(snapshot, rest, MISSING)
        return get_value_by_path(flat, key, MISSING)

    return resolve


class TriggerMatcher:
    """Selects workflows for entity, webhook and schedule events."""

    def match_entity_event(
        self,
        workflows: Iterable[Workflow],
        entity: str,
        event: str,
        data: Any,
        chain: Optional[dict[str, Any]] = None,
    ) -> list[Match]:
        """Workflows whose entity trigger matches, each with a fresh context.

        Args:
            workflows: Registered workflow definitions
            entity: Entity name, e.g. "Request"
            event: "create" | "update" | "delete"
            data: {"before": ..., "after": ...} or a bare record
            chain: Propagation metadata when the event came from a query step
        """
        before, after, flat = split_entity_data(event, data)
        resolver = _entity_resolver(before, after, flat)

        matches: list[Match] = []
        for workflow in self._enabled(workflows):
            trigger = workflow.trigger
            if trigger.entity != entity or trigger.event != event:
                continue
            if trigger.condition and not evaluate_condition(trigger.condition, flat, resolver):
                logger.debug(
                    "Entity trigger condition not met",
                    workflow=workflow.name, entity=entity, trigger_event=event,
                )
                continue
            matches.append((workflow, self.build_entity_context(entity, event, before, after, flat, chain)))
        return matches

    def match_webhook(
        self,
        workflows: Iterable[Workflow],
        path: str,
        request: Optional[dict[str, Any]] = None,
    ) -> list[Match]:
        """Workflows whose webhook path equals the inbound path exactly."""
        request = request or {}
        return [
            (workflow, self.build_webhook_context(path, request))
            for workflow in self._enabled(workflows)
            if workflow.trigger.webhook is not None and workflow.trigger.webhook == path
        ]

    def match_schedule(self, workflows: Iterable[Workflow], cron_expression: str) -> list[Match]:
        """Workflows whose schedule equals the fired cron expression exactly."""
        return [
            (workflow, self.build_schedule_context(cron_expression))
            for workflow in self._enabled(workflows)
            if workflow.trigger.schedule is not None
            and workflow.trigger.schedule == cron_expression
        ]

    @staticmethod
    def _enabled(workflows: Iterable[Workflow]) -> Iterable[Workflow]:
        return (w for w in workflows if w.enabled)

    # ─── Context builders ─────────────────────────────────────

    @staticmethod
    def build_entity_context(
        entity: str,
        event: str,
        before: Any,
        after: Any,
        flat: Any,
        chain: Optional[dict[str, Any]] = None,
    ) -> WorkflowContext:
        before, after, flat = copy.deepcopy((before, after, flat))
        variables: dict[str, Any] = {"entity": flat, "before": before, "after": after}
        if chain:
            variables["_chain"] = dict(chain)
        return WorkflowContext(
            trigger=TriggerInfo(
                type=TriggerType.ENTITY,
                entity=entity,
                event=event,
                data=flat,
                before=before,
                after=after,
            ),
            variables=variables,
        )

    @staticmethod
    def build_webhook_context(path: str, request: dict[str, Any]) -> WorkflowContext:
        request = copy.deepcopy(request)
        body = request.get("body")
        return WorkflowContext(
            trigger=TriggerInfo(type=TriggerType.WEBHOOK, data=body, path=path),
            variables={
                "webhook": {
                    "body": body,
                    "headers": request.get("headers", {}),
                    "query": request.get("query", {}),
                },
            },
            request=request,
        )

    @staticmethod
    def build_schedule_context(cron_expression: str) -> WorkflowContext:
        return WorkflowContext(
            trigger=TriggerInfo(type=TriggerType.SCHEDULE, schedule=cron_expression),
            variables={
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "schedule": cron_expression,
            },
        )

    @staticmethod
    def build_manual_context(data: Any = None, session: Any = None) -> WorkflowContext:
        data = copy.deepcopy(data)
        if session is None and isinstance(data, dict):
            session = data.get("session")
        return WorkflowContext(
            trigger=TriggerInfo(type=TriggerType.MANUAL, data=data),
            variables={"data": data},
            session=session,
        )
