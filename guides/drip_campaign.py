"""Simulated drip campaign: enroll a lead, send, wait, and react to a reply."""

import asyncio

from leadflow import (
    ActionType,
    EventIntakeHandler,
    FrozenClock,
    InMemoryWorkflowCatalog,
    InboundSignatureValidator,
    SchedulerLoop,
    StepExecutor,
    TriggerEvent,
    Workflow,
    WorkflowStep,
)
from leadflow.config import WebhookConfig
from leadflow.persistence import InMemoryEnrollmentStore
from leadflow.security import compute_twilio_signature
from leadflow.senders import InMemoryMessageSender

TWILIO_TOKEN = "demo-token"
WEBHOOK_URL = "https://hooks.example.com/webhooks/twilio/sms"


def build_workflow() -> Workflow:
    steps = [
        (ActionType.SEND_MESSAGE, {"channel": "sms", "body": "Hi! Want a quick demo?"}),
        (ActionType.WAIT_DELAY, {"hours": 1}),
        (ActionType.WAIT_FOR_REPLY, {}),
        (ActionType.BRANCH, {"contains": ["yes", "sure"], "if_true": 4, "if_false": 5}),
        (ActionType.SEND_MESSAGE, {"channel": "sms", "body": "Great, booking you in."}),
    ]
    return Workflow(
        id="wf-demo",
        workspace_id="ws-demo",
        name="Demo follow-up",
        trigger_event_type="lead_created",
        steps=[
            WorkflowStep(step_order=i, action_type=action, action_config=config)
            for i, (action, config) in enumerate(steps)
        ],
    )


async def main():
    """Walk one lead through the campaign on a simulated clock."""
    clock = FrozenClock()
    store = InMemoryEnrollmentStore()
    catalog = InMemoryWorkflowCatalog([build_workflow()])
    sender = InMemoryMessageSender()
    intake = EventIntakeHandler(
        store,
        catalog,
        validator=InboundSignatureValidator(
            WebhookConfig(twilio_auth_token=TWILIO_TOKEN), clock
        ),
        clock=clock,
    )
    scheduler = SchedulerLoop(store, catalog, StepExecutor(sender, clock), clock=clock)

    ack = await intake.ingest(
        TriggerEvent(
            workspace_id="ws-demo",
            lead_id="lead-1",
            event_type="lead_created",
            payload={"lead": {"phone": "+15555550100", "name": "Ada"}},
        )
    )
    enrollment_id = ack.enrollment_ids[0]
    print(f"Enrolled: {enrollment_id}")

    await scheduler.tick()
    print(f"Sent: {sender.last_sent().body}")

    clock.advance(hours=1, seconds=1)
    await scheduler.tick()
    row = await store.get_enrollment(enrollment_id)
    print(f"Status after delay: {row.status.value} on {row.resume_key}")

    params = {"From": "+15555550100", "Body": "Sure, tomorrow works", "MessageSid": "SM1"}
    signature = compute_twilio_signature(WEBHOOK_URL, params, TWILIO_TOKEN)
    result = await intake.handle_twilio_inbound(WEBHOOK_URL, signature, params)
    print(f"Reply resumed: {result.resumed}")

    await scheduler.tick()
    row = await store.get_enrollment(enrollment_id)
    print(f"Sent: {sender.last_sent().body}")
    print(f"Final status: {row.status.value}")
    for run in await store.list_runs(enrollment_id):
        print(f"  step {run.step_order}: {run.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
