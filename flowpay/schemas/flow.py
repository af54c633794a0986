from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ActionType = Literal["GO_TO_STEP", "LINK_TO_PRODUCT", "MAIN_MENU", "SHOW_PROFILE"]


class BotAction(BaseModel):
    type: ActionType
    payload: Optional[str] = None

    def to_token(self) -> str:
        """Callback token carried by the rendered button."""
        return f"{self.type}:{self.payload}" if self.payload else self.type


class BotButton(BaseModel):
    id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    action: BotAction


class BotStep(BaseModel):
    id: str = Field(min_length=1)
    name: str
    message: str
    buttons: list[BotButton] = Field(default_factory=list)


class BotFlow(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    name: str
    trigger: str = Field(min_length=1)
    start_step_id: Optional[str] = Field(default=None, alias="startStepId")
    steps: list[BotStep] = Field(default_factory=list)

    def find_step(self, step_id: str) -> Optional[BotStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def start_step(self) -> Optional[BotStep]:
        if not self.start_step_id:
            return None
        return self.find_step(self.start_step_id)


class FlowModel(BaseModel):
    """A tenant's conversation graph, stored as the tenant's bot_config document."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    flows: list[BotFlow]
    inactive_subscription_message: Optional[str] = Field(default=None, alias="inactiveSubscriptionMessage")
    delivery_message: Optional[str] = Field(default=None, alias="deliveryMessage")
