"""
Downstream export hook, invoked once a workflow reaches COMPLETED.

The engine calls ``export_completed`` after the completion is committed. An
exporter failure is logged by the engine and never undoes the completion.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class WorkflowExporter(Protocol):
    def export_completed(self, workflow) -> None: ...


class LoggingWorkflowExporter:
    """Default exporter: records the completed workflow snapshot in the log."""

    def export_completed(self, workflow) -> None:
        logger.info(
            "Workflow exported",
            extra={
                "workflow_id": workflow.id,
                "project_id": workflow.project_id,
                "snapshot": workflow.to_dict(include_steps=True),
            },
        )
