"""
Planner - Turn a free-form request into a workflow graph.

The service is asked for a JSON plan in the workflow file layout; the
reply is loaded with the same rules as a workflow file, so a plan can
replace the current canvas directly.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import partial

from bananaflow.core import operations as ops
from bananaflow.core.graph import GraphStore
from bananaflow.core.scheduler import RequestScheduler, get_scheduler
from bananaflow.core.workflow import WorkflowFormatError, parse_workflow
from bananaflow.providers.base import GenerationService


logger = logging.getLogger(__name__)


@dataclass
class WorkflowPlan:
    """A proposed workflow and a one-line summary of it."""
    description: str
    store: GraphStore


async def plan_workflow(
    text: str,
    service: GenerationService,
    scheduler: RequestScheduler | None = None,
    image: str | None = None,
) -> WorkflowPlan:
    """
    Ask the service to design a workflow for ``text``.

    The request goes through the scheduler like any node run. Raises
    ``WorkflowFormatError`` when the reply is not a usable plan.
    """
    scheduler = scheduler or get_scheduler()
    result = await scheduler.schedule(partial(service.generate, ops.workflow_plan(text, image)))

    try:
        data = json.loads(result.text or "")
    except json.JSONDecodeError as e:
        raise WorkflowFormatError("Failed to parse assistant plan.") from e

    store = parse_workflow(data)
    description = str(data.get("description") or "")
    logger.info("Planned workflow with %d nodes: %s", len(store), description)
    return WorkflowPlan(description=description, store=store)
