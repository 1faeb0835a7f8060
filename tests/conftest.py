from datetime import datetime, timezone

import pytest

import leadflow.catalog as catalog_module
import leadflow.persistence as persistence
from leadflow.catalog import InMemoryWorkflowCatalog
from leadflow.clock import FrozenClock
from leadflow.contracts import ActionType, Workflow, WorkflowStep
from leadflow.persistence import InMemoryEnrollmentStore
from leadflow.senders import InMemoryMessageSender

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _reset_singletons(monkeypatch, tmp_path):
    monkeypatch.setattr(persistence, "_store_instance", None)
    monkeypatch.setattr(catalog_module, "_catalog_instance", None)
    for name in (
        "LEADFLOW_DATABASE_URL",
        "DATABASE_URL",
        "LEADFLOW_SENDER",
        "TWILIO_AUTH_TOKEN",
        "SENDGRID_WEBHOOK_VERIFICATION_KEY",
        "SENDGRID_INBOUND_USERNAME",
        "SENDGRID_INBOUND_PASSWORD",
    ):
        monkeypatch.delenv(name, raising=False)
    # Never pick up a config.yaml from the working directory.
    monkeypatch.setenv("LEADFLOW_CONFIG", str(tmp_path / "missing.yaml"))


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def store():
    return InMemoryEnrollmentStore()


@pytest.fixture
def sender():
    return InMemoryMessageSender()


@pytest.fixture
def make_workflow():
    def _make(*steps, workflow_id="wf-1", workspace_id="ws-1", trigger="lead_created", enabled=True):
        return Workflow(
            id=workflow_id,
            workspace_id=workspace_id,
            name=f"{workflow_id} campaign",
            trigger_event_type=trigger,
            is_enabled=enabled,
            steps=[
                WorkflowStep(
                    id=f"{workflow_id}-step-{order}",
                    step_order=order,
                    action_type=ActionType(action),
                    action_config=config,
                )
                for order, (action, config) in enumerate(steps)
            ],
        )

    return _make


@pytest.fixture
def catalog():
    return InMemoryWorkflowCatalog()
