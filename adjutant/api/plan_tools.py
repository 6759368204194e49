"""Session plan tracking tools: create_plan and update_plan.

The plan lives on the SessionState; items can be addressed by id or by
0-based index.
"""

from __future__ import annotations

import logging
import uuid
from typing import Literal

from pydantic import BaseModel, Field

from adjutant.api.models import Plan, PlanItem, ToolOutcome
from adjutant.api.tools import ToolContext, ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)

ItemStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]
PlanStatus = Literal["active", "completed", "failed"]


class PlanItemInput(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""


class CreatePlanParams(BaseModel):
    items: list[PlanItemInput] = Field(min_length=1, description="Ordered plan steps")


class PlanItemUpdate(BaseModel):
    id: str = Field(description="Item id or 0-based index")
    status: ItemStatus | None = None
    title: str | None = None


class UpdatePlanParams(BaseModel):
    status: PlanStatus | None = None
    items: list[PlanItemUpdate] = Field(default_factory=list)
    current_step_id: str | None = None


def format_plan(plan: Plan) -> str:
    lines = [f"Plan ({plan.status}):"]
    for idx, item in enumerate(plan.items):
        marker = ">" if item.id == plan.current_step_id else " "
        lines.append(f"{marker}[{idx}] {item.id[:8]} [{item.status}] {item.title}")
    return "\n".join(lines)


def _find_item(plan: Plan, ref: str) -> PlanItem | None:
    for item in plan.items:
        if item.id == ref or (len(ref) >= 8 and item.id.startswith(ref)):
            return item
    if ref.isdigit() and int(ref) < len(plan.items):
        return plan.items[int(ref)]
    return None


async def create_plan(params: CreatePlanParams, ctx: ToolContext) -> ToolOutcome:
    plan = Plan(
        items=[
            PlanItem(id=uuid.uuid4().hex, title=i.title, description=i.description)
            for i in params.items
        ]
    )
    plan.current_step_id = plan.items[0].id
    ctx.session.plan = plan
    logger.info("Session %s: plan created with %d items", ctx.session.session_id, len(plan.items))
    return ToolOutcome(
        success=True,
        result=(
            f"Plan created with {len(plan.items)} items:\n{format_plan(plan)}\n\n"
            "Use the index (0-based) or item id to update items."
        ),
    )


async def update_plan(params: UpdatePlanParams, ctx: ToolContext) -> ToolOutcome:
    plan = ctx.session.plan
    if plan is None:
        return ToolOutcome(success=False, error="No plan exists. Call create_plan first.")

    # resolve every reference before touching the plan
    targets = [(update, _find_item(plan, update.id)) for update in params.items]
    step = _find_item(plan, params.current_step_id) if params.current_step_id is not None else None
    unknown = [update.id for update, item in targets if item is None]
    if params.current_step_id is not None and step is None:
        unknown.append(params.current_step_id)
    if unknown:
        return ToolOutcome(success=False, error=f"Unknown plan item(s): {', '.join(unknown)}")

    for update, item in targets:
        if update.status is not None:
            item.status = update.status
        if update.title is not None:
            item.title = update.title
    if step is not None:
        plan.current_step_id = step.id
    if params.status is not None:
        plan.status = params.status
    return ToolOutcome(success=True, result=f"Plan updated.\n{format_plan(plan)}")


def register_plan_tools(registry: ToolRegistry) -> None:
    registry.register(ToolDefinition(
        name="create_plan",
        description="Create a new execution plan with a list of steps. Replaces any existing plan.",
        params=CreatePlanParams,
        handler=create_plan,
    ))
    registry.register(ToolDefinition(
        name="update_plan",
        description="Update the plan status, item statuses or titles, or the current step.",
        params=UpdatePlanParams,
        handler=update_plan,
    ))
