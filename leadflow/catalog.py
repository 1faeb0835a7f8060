"""Read-only lookup of workflow definitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

import yaml
from pydantic import BaseModel, Field, model_validator

from .config import LeadflowConfig, load_config
from .contracts import Workflow

logger = logging.getLogger(__name__)


class WorkflowCatalog(Protocol):
    """Source of workflow definitions authored elsewhere."""

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """Return the workflow with ``workflow_id`` if known."""

    async def find_enabled(
        self, workspace_id: str, event_type: str
    ) -> List[Workflow]:
        """Return enabled workflows in ``workspace_id`` triggered by ``event_type``."""

    async def list_workflows(self) -> List[Workflow]:
        """Return every known workflow."""


class CatalogDocument(BaseModel):
    """Shape of a YAML catalog file."""

    workflows: List[Workflow] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_step_orders(self) -> "CatalogDocument":
        for workflow in self.workflows:
            orders = sorted(s.step_order for s in workflow.steps)
            if orders != list(range(len(orders))):
                raise ValueError(
                    f"Workflow {workflow.id} step orders must be dense from 0, got {orders}"
                )
        return self


class InMemoryWorkflowCatalog(WorkflowCatalog):
    """Catalog backed by a dictionary of workflows."""

    def __init__(self, workflows: Iterable[Workflow] = ()) -> None:
        self._workflows: Dict[str, Workflow] = {}
        for workflow in workflows:
            self.register(workflow)

    def register(self, workflow: Workflow) -> None:
        steps = sorted(workflow.steps, key=lambda s: s.step_order)
        self._workflows[workflow.id] = workflow.model_copy(update={"steps": steps})

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return self._workflows.get(workflow_id)

    async def find_enabled(
        self, workspace_id: str, event_type: str
    ) -> List[Workflow]:
        return [
            wf
            for wf in self._workflows.values()
            if wf.is_enabled
            and wf.workspace_id == workspace_id
            and wf.trigger_event_type == event_type
        ]

    async def list_workflows(self) -> List[Workflow]:
        return list(self._workflows.values())


def load_catalog(path: str | Path) -> InMemoryWorkflowCatalog:
    """Build a catalog from a YAML file with a top-level ``workflows`` list."""

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    document = CatalogDocument(**data)
    logger.info(f"Loaded {len(document.workflows)} workflow(s) from {path}")
    return InMemoryWorkflowCatalog(document.workflows)


_catalog_instance: WorkflowCatalog | None = None


def get_catalog(
    path: Optional[str] = None, config: Optional[LeadflowConfig] = None
) -> WorkflowCatalog:
    """Factory function to obtain the workflow catalog.

    Reads the YAML file named by ``path`` or ``catalog_path`` in the loaded
    configuration. Without either, an empty in-memory catalog is returned.
    """

    global _catalog_instance
    if _catalog_instance is not None and path is None and config is None:
        return _catalog_instance

    config = config or load_config()
    path = path or config.catalog_path
    _catalog_instance = load_catalog(path) if path else InMemoryWorkflowCatalog()
    return _catalog_instance
