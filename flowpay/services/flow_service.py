from typing import Any, Optional

from pydantic import ValidationError

from flowpay.logging_config import get_logger
from flowpay.schemas.flow import BotFlow, BotStep, FlowModel
from flowpay.services.result import Result

logger = get_logger("flow_service")

MAIN_TRIGGER = "/start"


def parse_flow_model(raw: Any) -> Optional[FlowModel]:
    """Parse a stored bot_config document. Any shape mismatch means the bot is unconfigured."""
    if not isinstance(raw, dict):
        return None
    try:
        return FlowModel.model_validate(raw)
    except ValidationError as e:
        logger.warning(
            "Stored flow model failed to parse",
            extra={"context": {"errors": e.error_count()}},
        )
        return None


def validate_flow_model(model: FlowModel) -> Result[None]:
    """Structural checks run when a flow model is saved.

    Product references in LINK_TO_PRODUCT payloads are not checked here; they are
    resolved when the product card is rendered.
    """
    issues: list[str] = []
    seen_flow_ids: set[str] = set()

    for flow in model.flows:
        if flow.id in seen_flow_ids:
            issues.append(f"duplicate flow id '{flow.id}'")
        seen_flow_ids.add(flow.id)

        step_ids: set[str] = set()
        for step in flow.steps:
            if step.id in step_ids:
                issues.append(f"flow '{flow.name}': duplicate step id '{step.id}'")
            step_ids.add(step.id)

            button_ids: set[str] = set()
            for button in step.buttons:
                if button.id in button_ids:
                    issues.append(f"step '{step.name}': duplicate button id '{button.id}'")
                button_ids.add(button.id)

        if not flow.start_step_id:
            issues.append(f"flow '{flow.name}': start step is not set")
        elif flow.start_step_id not in step_ids:
            issues.append(f"flow '{flow.name}': start step '{flow.start_step_id}' not found")

    if issues:
        return Result.failure("Invalid flow model", code="invalid_flow_model", issues=issues)
    return Result.success(None)


def find_flow_by_trigger(model: FlowModel, trigger: str) -> Optional[BotFlow]:
    for flow in model.flows:
        if flow.trigger == trigger:
            return flow
    return None


def find_step(model: FlowModel, step_id: str) -> Optional[BotStep]:
    """Resolve a step id across all flows, first match wins."""
    for flow in model.flows:
        step = flow.find_step(step_id)
        if step:
            return step
    return None


def get_main_step(model: FlowModel) -> Optional[BotStep]:
    """Start step of the /start flow."""
    flow = find_flow_by_trigger(model, MAIN_TRIGGER)
    if not flow:
        return None
    return flow.start_step
