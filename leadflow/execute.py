"""Step execution engine for enrollments."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from .clock import Clock, SystemClock
from .constants import DEFAULT_SEND_TIMEOUT_SECONDS
from .contracts import (
    ActionType,
    Advanced,
    Channel,
    Completed,
    Outcome,
    PermanentFailure,
    ResumeCondition,
    TransientFailure,
    WaitingForEvent,
    Workflow,
    WorkflowStep,
)
from .exceptions import (
    EnrollmentCancelled,
    LeadflowError,
    PermanentActionError,
    TransientActionError,
)
from .persistence import Enrollment
from .senders import MessageSender, OutboundMessage
from .utils.addresses import normalize_address

logger = logging.getLogger(__name__)

# Context key marking a wait-delay step whose delay has already been scheduled.
ARMED_DELAY_KEY = "_armed_delay_step"
# Context key marking a wait-for-reply step that parked the enrollment.
AWAITING_EVENT_KEY = "_awaiting_event_step"

Checkpoint = Callable[[], Awaitable[None]]


async def _no_checkpoint() -> None:
    return None


def _lookup(context: Dict[str, Any], path: str) -> Any:
    value: Any = context
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _delay_from_config(config: Dict[str, Any]) -> timedelta:
    if not any(k in config for k in ("seconds", "minutes", "hours", "days")):
        return timedelta(hours=1)
    try:
        delay = timedelta(
            days=float(config.get("days", 0)),
            hours=float(config.get("hours", 0)),
            minutes=float(config.get("minutes", 0)),
            seconds=float(config.get("seconds", 0)),
        )
    except (TypeError, ValueError) as exc:
        raise PermanentActionError(f"Invalid wait-delay configuration: {exc}") from exc
    if delay < timedelta(0):
        raise PermanentActionError("wait-delay cannot be negative")
    return delay


class StepExecutor:
    """Executes the current step of a claimed enrollment.

    ``execute`` never raises for action failures: they come back as
    ``TransientFailure`` or ``PermanentFailure`` outcomes. The only exception
    that escapes is ``EnrollmentCancelled``, raised by the checkpoint the
    scheduler passes in when the row was cancelled before a side effect.
    """

    def __init__(
        self,
        sender: MessageSender,
        clock: Optional[Clock] = None,
        send_timeout: float = DEFAULT_SEND_TIMEOUT_SECONDS,
    ) -> None:
        self._sender = sender
        self._clock = clock or SystemClock()
        self._send_timeout = send_timeout
        self._handlers = {
            ActionType.SEND_MESSAGE: self._send_message,
            ActionType.WAIT_DELAY: self._wait_delay,
            ActionType.WAIT_FOR_REPLY: self._wait_for_reply,
            ActionType.BRANCH: self._branch,
        }

    async def execute(
        self,
        enrollment: Enrollment,
        step: WorkflowStep,
        workflow: Optional[Workflow] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> Outcome:
        context = dict(enrollment.context_json)
        handler = self._handlers.get(step.action_type)
        if handler is None:
            return PermanentFailure(reason=f"Unsupported action type: {step.action_type}")

        logger.info(
            f"Executing step {step.step_order} ({step.action_type.value}) "
            f"for enrollment {enrollment.id}"
        )
        try:
            outcome = await handler(enrollment, step, context, checkpoint or _no_checkpoint)
        except EnrollmentCancelled:
            raise
        except PermanentActionError as exc:
            return PermanentFailure(reason=str(exc))
        except TransientActionError as exc:
            return TransientFailure(reason=str(exc))

        if isinstance(outcome, Advanced) and workflow is not None:
            if outcome.next_step_order > workflow.last_step_order + 1:
                return PermanentFailure(
                    reason=f"Step {step.step_order} jumps past the end of workflow "
                    f"{workflow.id} to step {outcome.next_step_order}"
                )
            if outcome.next_step_order > workflow.last_step_order:
                return Completed(context=outcome.context)
        return outcome

    # ------------------------------------------------------------------
    # Action handlers
    async def _send_message(
        self,
        enrollment: Enrollment,
        step: WorkflowStep,
        context: Dict[str, Any],
        checkpoint: Checkpoint,
    ) -> Outcome:
        config = step.action_config
        try:
            channel = Channel(config.get("channel", Channel.SMS.value))
        except ValueError as exc:
            raise PermanentActionError(f"Unsupported channel: {config.get('channel')}") from exc

        contact_field = "phone" if channel == Channel.SMS else "email"
        to = (
            config.get("to")
            or _lookup(context, f"lead.{contact_field}")
            or _lookup(context, f"trigger.{contact_field}")
        )
        if not to:
            raise PermanentActionError(
                f"No {contact_field} recipient configured for step {step.step_order}"
            )
        body = config.get("body") or config.get("message")
        if not body:
            raise PermanentActionError(f"Step {step.step_order} has no message body")

        message = OutboundMessage(
            channel=channel,
            to=str(to),
            body=str(body),
            subject=config.get("subject") if channel == Channel.EMAIL else None,
            idempotency_key=f"{enrollment.id}:{step.step_order}",
            workspace_id=enrollment.workspace_id,
            lead_id=enrollment.lead_id,
            enrollment_id=enrollment.id,
        )

        await checkpoint()
        try:
            receipt = await asyncio.wait_for(
                self._sender.send(message), timeout=self._send_timeout
            )
        except asyncio.TimeoutError as exc:
            raise TransientActionError(
                f"{channel.value} send timed out after {self._send_timeout}s; delivery unknown"
            ) from exc
        except LeadflowError:
            raise
        except Exception as exc:
            # Unknown sender failure: the message may or may not be out.
            raise TransientActionError(f"{channel.value} send failed: {exc}") from exc

        context["last_message"] = {
            "channel": channel.value,
            "to": message.to,
            "external_id": receipt.external_id,
            "step_order": step.step_order,
        }
        logger.info(
            f"Sent {channel.value} for enrollment {enrollment.id} "
            f"(external id {receipt.external_id})"
        )
        return Advanced(
            next_step_order=step.step_order + 1,
            next_run_at=self._clock.now(),
            context=context,
        )

    async def _wait_delay(
        self,
        enrollment: Enrollment,
        step: WorkflowStep,
        context: Dict[str, Any],
        checkpoint: Checkpoint,
    ) -> Outcome:
        now = self._clock.now()
        if context.get(ARMED_DELAY_KEY) == step.step_order:
            context.pop(ARMED_DELAY_KEY)
            return Advanced(next_step_order=step.step_order + 1, next_run_at=now, context=context)

        delay = _delay_from_config(step.action_config)
        if not delay:
            return Advanced(next_step_order=step.step_order + 1, next_run_at=now, context=context)
        context[ARMED_DELAY_KEY] = step.step_order
        logger.info(
            f"Enrollment {enrollment.id} waiting {delay} at step {step.step_order}"
        )
        return Advanced(
            next_step_order=step.step_order, next_run_at=now + delay, context=context
        )

    async def _wait_for_reply(
        self,
        enrollment: Enrollment,
        step: WorkflowStep,
        context: Dict[str, Any],
        checkpoint: Checkpoint,
    ) -> Outcome:
        now = self._clock.now()
        if context.get(AWAITING_EVENT_KEY) == step.step_order:
            # Resumed by an inbound callback; its payload is already in context.
            context.pop(AWAITING_EVENT_KEY)
            return Advanced(next_step_order=step.step_order + 1, next_run_at=now, context=context)

        config = step.action_config
        kind = config.get("match", "reply")
        if kind not in ("reply", "receipt"):
            raise PermanentActionError(f"Unsupported wait-for-reply match: {kind}")
        last_message = context.get("last_message") or {}

        try:
            channel = Channel(config.get("channel") or last_message.get("channel") or "")
        except ValueError as exc:
            raise PermanentActionError(
                f"wait-for-reply at step {step.step_order} has no channel"
            ) from exc

        if kind == "reply":
            address = config.get("from") or last_message.get("to")
            if not address:
                raise PermanentActionError(
                    f"wait-for-reply at step {step.step_order} has no counterparty address"
                )
            key = normalize_address(channel, str(address))
        else:
            key = last_message.get("external_id")
            if not key:
                raise PermanentActionError(
                    f"wait-for-reply at step {step.step_order} has no sent message to track"
                )

        no_reply_at = None
        if config.get("no_reply_hours") is not None:
            try:
                hours = float(config["no_reply_hours"])
            except (TypeError, ValueError) as exc:
                raise PermanentActionError(f"Invalid no_reply_hours: {exc}") from exc
            if hours <= 0:
                raise PermanentActionError("no_reply_hours must be positive")
            no_reply_at = now + timedelta(hours=hours)

        condition = ResumeCondition(kind=kind, channel=channel, key=str(key))
        context[AWAITING_EVENT_KEY] = step.step_order
        logger.info(
            f"Enrollment {enrollment.id} waiting for {condition.resume_key}"
        )
        return WaitingForEvent(
            resume_condition=condition, context=context, no_reply_at=no_reply_at
        )

    async def _branch(
        self,
        enrollment: Enrollment,
        step: WorkflowStep,
        context: Dict[str, Any],
        checkpoint: Checkpoint,
    ) -> Outcome:
        config = step.action_config
        if "if_true" not in config or "if_false" not in config:
            raise PermanentActionError(
                f"Branch at step {step.step_order} needs if_true and if_false"
            )
        value = _lookup(context, config.get("field", "reply.body"))
        result = self._evaluate(value, config)
        target = config["if_true"] if result else config["if_false"]
        if not isinstance(target, int) or target <= step.step_order:
            raise PermanentActionError(
                f"Branch at step {step.step_order} must jump forward, got {target!r}"
            )

        context["last_condition_result"] = result
        logger.info(
            f"Branch at step {step.step_order} for enrollment {enrollment.id}: "
            f"condition={result}, jumping to step {target}"
        )
        return Advanced(next_step_order=target, next_run_at=self._clock.now(), context=context)

    @staticmethod
    def _evaluate(value: Any, config: Dict[str, Any]) -> bool:
        if value is None:
            return False
        fold = config.get("case_insensitive", True)
        text = str(value).lower() if fold else str(value)

        def norm(s: Any) -> str:
            return str(s).lower() if fold else str(s)

        if "equals" in config:
            return text.strip() == norm(config["equals"]).strip()
        contains = config.get("contains") or []
        if isinstance(contains, str):
            contains = [contains]
        if contains:
            return any(norm(needle) in text for needle in contains)
        return bool(value)
