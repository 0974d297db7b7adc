from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from app.pipeline.errors import RuleExecutionError


class CreateTaskAction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["create_task"] = "create_task"
    title: str = Field(default="Follow up required", min_length=1, max_length=255)
    description: str = "Automated task created"
    days_from_now: int = Field(default=1, ge=0, le=3650)
    assigned_user_id: int | None = None


class SendEmailAction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["send_email"] = "send_email"
    template: str = Field(default="stage_transition", min_length=1, max_length=100)
    recipient_user_id: int | None = None
    template_data: dict[str, Any] = Field(default_factory=dict)


class UpdateProbabilityAction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["update_probability"] = "update_probability"
    probability: Decimal = Field(ge=0, le=1)


class UnknownAction(BaseModel):
    type: str
    payload: Any = Field(default_factory=dict)


KnownAction = Annotated[
    CreateTaskAction | SendEmailAction | UpdateProbabilityAction,
    Field(discriminator="type"),
]
AutomationAction = CreateTaskAction | SendEmailAction | UpdateProbabilityAction | UnknownAction

KNOWN_ACTION_TYPES = frozenset({"create_task", "send_email", "update_probability"})

_known_action_adapter = TypeAdapter(KnownAction)


def parse_action(action_type: str, action_data: Any) -> AutomationAction:
    """Turn a stored rule payload into its typed action.

    Unrecognised action types come back as ``UnknownAction`` so the executor can
    log and skip them; malformed payloads for known types raise ``RuleExecutionError``.
    """
    if action_type not in KNOWN_ACTION_TYPES:
        return UnknownAction(type=action_type, payload=action_data if action_data is not None else {})

    if action_data is None:
        action_data = {}
    if not isinstance(action_data, dict):
        raise RuleExecutionError(f"action_data for {action_type} must be an object")

    try:
        return _known_action_adapter.validate_python({**action_data, "type": action_type})
    except PydanticValidationError as exc:
        raise RuleExecutionError(f"invalid {action_type} payload: {exc.errors(include_url=False)[0]['msg']}") from exc
