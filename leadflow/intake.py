"""Entry points for trigger events and inbound provider callbacks."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from .catalog import WorkflowCatalog
from .clock import Clock, SystemClock
from .constants import (
    DEFAULT_NO_REPLY_BATCH_SIZE,
    EMAIL_OPT_OUT_KEYWORDS,
    NO_REPLY_EVENT_TYPE,
    SMS_OPT_OUT_KEYWORDS,
)
from .contracts import (
    CallbackResult,
    Channel,
    EnrollmentStatus,
    IntakeAck,
    ResumeCondition,
    TriggerEvent,
)
from .exceptions import WebhookValidationError
from .persistence import Enrollment, EnrollmentStore
from .security import AuditLog, InboundSignatureValidator
from .utils.addresses import normalize_email, normalize_phone

logger = logging.getLogger(__name__)

# Delivery statuses after which the provider sends no further callbacks.
TWILIO_FINAL_STATUSES = {
    "delivered": "delivered",
    "read": "delivered",
    "undelivered": "failed",
    "failed": "failed",
}
SENDGRID_FINAL_EVENTS = {
    "delivered": "delivered",
    "bounce": "bounced",
    "dropped": "failed",
}
SENDGRID_OPT_OUT_EVENTS = {"unsubscribe", "group_unsubscribe", "spamreport"}

_HTML_TAG = re.compile(r"<[^>]+>")


def is_sms_opt_out(body: str) -> bool:
    normalized = (body or "").strip().lower()
    return any(
        normalized == keyword
        or normalized.startswith(keyword + " ")
        or normalized.startswith(keyword + "\n")
        for keyword in SMS_OPT_OUT_KEYWORDS
    )


def is_email_opt_out(subject: Optional[str], body: Optional[str]) -> bool:
    text = f"{subject or ''} {body or ''}".strip().lower()
    return any(keyword in text for keyword in EMAIL_OPT_OUT_KEYWORDS)


def _sendgrid_message_id(event: Mapping[str, Any]) -> Optional[str]:
    raw = event.get("sg_message_id") or event.get("smtp-id")
    if not raw:
        return None
    # sg_message_id carries a ".filter..." suffix the send API never returned.
    return str(raw).strip("<>").split(".", 1)[0]


class EventIntakeHandler:
    """Turns trigger events into enrollments and callbacks into resumptions.

    Trigger ingestion is fire-and-forget: :meth:`ingest` never raises and
    redelivering an event creates nothing new. Callbacks only touch state
    after their signature checks out; a rejected callback is written to the
    audit log and leaves every enrollment as it was.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        catalog: WorkflowCatalog,
        validator: Optional[InboundSignatureValidator] = None,
        clock: Optional[Clock] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._clock = clock or SystemClock()
        self._validator = validator or InboundSignatureValidator(clock=self._clock)
        self.audit = audit or AuditLog()

    # ------------------------------------------------------------------
    # Trigger events
    async def ingest(self, event: TriggerEvent) -> IntakeAck:
        created: List[str] = []
        if not event.workspace_id:
            logger.info(f"Event {event.event_id} has no workspace; nothing to enroll")
            return IntakeAck(event_id=event.event_id)

        try:
            workflows = await self._catalog.find_enabled(
                event.workspace_id, event.event_type
            )
            now = self._clock.now()
            for workflow in workflows:
                enrollment = Enrollment(
                    workflow_id=workflow.id,
                    workspace_id=event.workspace_id,
                    lead_id=event.lead_id,
                    event_id=event.event_id,
                    status=EnrollmentStatus.PENDING,
                    context_json=self._seed_context(event),
                    current_step_order=0,
                    next_run_at=now,
                    enrolled_at=now,
                )
                if await self._store.create_enrollment(enrollment):
                    created.append(enrollment.id)
                    logger.info(
                        f"Enrolled lead {event.lead_id} in workflow {workflow.id} "
                        f"as {enrollment.id}"
                    )
                else:
                    logger.debug(
                        f"Event {event.event_id} already enrolled in workflow {workflow.id}"
                    )
        except Exception:
            logger.exception(f"Failed to ingest event {event.event_id}")
            return IntakeAck(event_id=event.event_id, accepted=False, enrollment_ids=created)
        return IntakeAck(event_id=event.event_id, enrollment_ids=created)

    @staticmethod
    def _seed_context(event: TriggerEvent) -> Dict[str, Any]:
        lead = dict(event.payload.get("lead") or {})
        if event.lead_id:
            lead.setdefault("id", event.lead_id)
        return {
            "trigger": dict(event.payload),
            "lead": lead,
            "event": {
                "id": event.event_id,
                "type": event.event_type,
                "occurred_at": event.occurred_at.isoformat(),
            },
        }

    async def emit_no_reply_events(
        self, limit: int = DEFAULT_NO_REPLY_BATCH_SIZE
    ) -> List[IntakeAck]:
        """Emit ``no_reply_after_hours`` for waits whose deadline has passed.

        The waiting enrollment itself is left as it is; workflows listening
        for the event decide what happens next. Event ids are derived from
        the enrollment and step, so a deadline processed twice enrolls once.
        """
        acks: List[IntakeAck] = []
        for enrollment in await self._store.find_no_reply_due(self._clock.now(), limit):
            deadline = enrollment.no_reply_at
            lead = dict(enrollment.context_json.get("lead") or {})
            last_message = enrollment.context_json.get("last_message") or {}
            event = TriggerEvent(
                event_id=f"no-reply:{enrollment.id}:{enrollment.current_step_order}",
                workspace_id=enrollment.workspace_id,
                lead_id=enrollment.lead_id,
                event_type=NO_REPLY_EVENT_TYPE,
                payload={
                    "lead": lead,
                    "enrollment_id": enrollment.id,
                    "workflow_id": enrollment.workflow_id,
                    "step_order": enrollment.current_step_order,
                    "last_message": last_message,
                    "deadline": deadline.isoformat(),
                },
                occurred_at=self._clock.now(),
            )
            ack = await self.ingest(event)
            if not ack.accepted:
                # Deadline stays set so the next pass tries again.
                continue
            await self._store.take_no_reply(enrollment.id, deadline)
            logger.info(
                f"Enrollment {enrollment.id} got no reply by {deadline.isoformat()}; "
                f"emitted {NO_REPLY_EVENT_TYPE}"
            )
            acks.append(ack)
        return acks

    # ------------------------------------------------------------------
    # Twilio
    async def handle_twilio_inbound(
        self, url: str, signature: str, params: Mapping[str, Any]
    ) -> CallbackResult:
        """Inbound SMS reply."""
        try:
            self._require(
                self._validator.validate_twilio(url, signature, params),
                "twilio",
                "invalid signature",
            )
        except WebhookValidationError as exc:
            return await self._reject(exc, url=url)

        sender = str(params.get("From") or "")
        if not sender:
            return CallbackResult(accepted=True, reason="missing From")
        body = str(params.get("Body") or "")
        condition = ResumeCondition(
            kind="reply", channel=Channel.SMS, key=normalize_phone(sender)
        )
        if is_sms_opt_out(body):
            cancelled = await self._cancel_matching(condition.resume_key)
            return CallbackResult(accepted=True, reason="opt-out", cancelled=cancelled)

        payload = {
            "reply": {
                "channel": Channel.SMS.value,
                "from": sender,
                "to": params.get("To"),
                "body": body,
                "external_id": params.get("MessageSid"),
                "received_at": self._clock.now().isoformat(),
            }
        }
        resumed = await self._resume_matching(condition.resume_key, payload)
        return CallbackResult(accepted=True, resumed=resumed)

    async def handle_twilio_status(
        self, url: str, signature: str, params: Mapping[str, Any]
    ) -> CallbackResult:
        """SMS delivery status callback."""
        try:
            self._require(
                self._validator.validate_twilio(url, signature, params),
                "twilio",
                "invalid signature",
            )
        except WebhookValidationError as exc:
            return await self._reject(exc, url=url)

        sid = params.get("MessageSid")
        raw_status = str(params.get("MessageStatus") or "").lower()
        status = TWILIO_FINAL_STATUSES.get(raw_status)
        if not sid or status is None:
            return CallbackResult(accepted=True)

        condition = ResumeCondition(kind="receipt", channel=Channel.SMS, key=str(sid))
        payload = {
            "receipt": {
                "channel": Channel.SMS.value,
                "external_id": sid,
                "status": status,
                "error": params.get("ErrorMessage"),
                "error_code": params.get("ErrorCode"),
            }
        }
        resumed = await self._resume_matching(condition.resume_key, payload)
        return CallbackResult(accepted=True, resumed=resumed)

    # ------------------------------------------------------------------
    # SendGrid
    async def handle_sendgrid_events(
        self, signature: str, timestamp: str, body: str | bytes
    ) -> CallbackResult:
        """Signed event webhook carrying a JSON list of delivery events."""
        try:
            self._require(
                self._validator.validate_sendgrid(signature, timestamp, body),
                "sendgrid",
                "invalid signature",
            )
        except WebhookValidationError as exc:
            return await self._reject(exc, timestamp=timestamp)

        try:
            events = json.loads(body)
        except ValueError:
            return CallbackResult(accepted=False, reason="malformed payload")
        if isinstance(events, dict):
            events = [events]

        result = CallbackResult(accepted=True)
        for event in events:
            if not isinstance(event, dict):
                continue
            message_id = _sendgrid_message_id(event)
            if not message_id:
                logger.debug(f"SendGrid event without message id: {event.get('event')}")
                continue
            kind = str(event.get("event") or "")
            resume_key = ResumeCondition(
                kind="receipt", channel=Channel.EMAIL, key=message_id
            ).resume_key
            if kind in SENDGRID_OPT_OUT_EVENTS:
                result.cancelled.extend(await self._cancel_matching(resume_key))
            elif kind in SENDGRID_FINAL_EVENTS:
                payload = {
                    "receipt": {
                        "channel": Channel.EMAIL.value,
                        "external_id": message_id,
                        "status": SENDGRID_FINAL_EVENTS[kind],
                        "error": event.get("reason") or event.get("response"),
                    }
                }
                result.resumed.extend(await self._resume_matching(resume_key, payload))
        return result

    async def handle_sendgrid_inbound(
        self, auth_header: Optional[str], form: Mapping[str, Any]
    ) -> CallbackResult:
        """Inbound Parse email reply, protected by basic auth."""
        try:
            self._require(
                self._validator.validate_sendgrid_inbound(auth_header),
                "sendgrid",
                "invalid inbound credentials",
            )
        except WebhookValidationError as exc:
            return await self._reject(exc)

        sender = str(form.get("from") or "")
        if not sender:
            return CallbackResult(accepted=True, reason="missing from")
        subject = form.get("subject")
        text = form.get("text") or _HTML_TAG.sub(" ", str(form.get("html") or "")).strip()
        condition = ResumeCondition(
            kind="reply", channel=Channel.EMAIL, key=normalize_email(sender)
        )
        if is_email_opt_out(subject, text):
            cancelled = await self._cancel_matching(condition.resume_key)
            return CallbackResult(accepted=True, reason="opt-out", cancelled=cancelled)

        payload = {
            "reply": {
                "channel": Channel.EMAIL.value,
                "from": sender,
                "to": form.get("to"),
                "subject": subject,
                "body": text,
                "received_at": self._clock.now().isoformat(),
            }
        }
        resumed = await self._resume_matching(condition.resume_key, payload)
        return CallbackResult(accepted=True, resumed=resumed)

    # ------------------------------------------------------------------
    @staticmethod
    def _require(valid: bool, provider: str, reason: str) -> None:
        if not valid:
            raise WebhookValidationError(provider, reason)

    async def _reject(self, exc: WebhookValidationError, **details: Any) -> CallbackResult:
        await self.audit.record("webhook_rejected", exc.provider, reason=exc.reason, **details)
        return CallbackResult(accepted=False, reason=exc.reason)

    async def _resume_matching(
        self, resume_key: str, payload: Dict[str, Any]
    ) -> List[str]:
        now = self._clock.now()
        resumed = []
        for enrollment in await self._store.find_waiting(resume_key):
            if await self._store.resume_enrollment(enrollment.id, now, payload):
                resumed.append(enrollment.id)
                logger.info(f"Resumed enrollment {enrollment.id} on {resume_key}")
        if not resumed:
            logger.debug(f"No waiting enrollment matched {resume_key}")
        return resumed

    async def _cancel_matching(self, resume_key: str) -> List[str]:
        now = self._clock.now()
        cancelled = []
        for enrollment in await self._store.find_waiting(resume_key):
            if await self._store.cancel_enrollment(enrollment.id, now):
                cancelled.append(enrollment.id)
                logger.info(f"Cancelled enrollment {enrollment.id} after opt-out")
        return cancelled
