from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.pipeline.actions import parse_action
from app.pipeline.errors import RuleExecutionError


ActionType = Literal["create_task", "send_email", "update_probability"]
ExecutionResult = Literal["success", "failed"]


class StageTransitionRequest(BaseModel):
    stage_id: int = Field(gt=0)
    notes: str | None = Field(default=None, max_length=500)
    trigger_automation: bool = True


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    company_id: int | None
    assigned_user_id: int | None
    pipeline_stage_id: int
    stage_name: str
    value: float
    currency: str
    probability: float
    status: str
    expected_close_date: date | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class TransitionRead(BaseModel):
    from_stage: str
    to_stage: str
    probability_change: str


class StageTransitionResponse(BaseModel):
    success: bool = True
    deal: DealRead
    transition: TransitionRead
    automation_triggered: bool
    timestamp: datetime


class ExecutionOutcome(BaseModel):
    rule_id: int
    rule_name: str
    action_type: str
    result: ExecutionResult
    error_message: str | None = None


class TransitionSummary(BaseModel):
    deal_id: int
    from_stage_id: int
    from_stage_name: str
    to_stage_id: int
    to_stage_name: str
    previous_probability: Decimal
    new_probability: Decimal
    probability_change: str
    automation_triggered: bool
    history_id: int
    automation_outcomes: list[ExecutionOutcome] = Field(default_factory=list)


class StageHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_id: int
    from_stage_id: int | None
    to_stage_id: int
    changed_by_user_id: int | None
    notes: str
    created_at: datetime


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    display_order: int = Field(gt=0)
    win_probability: Decimal = Field(ge=0, le=1, decimal_places=2)
    is_active: bool = True


class PipelineStageUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_active: bool | None = None
    win_probability: Decimal | None = Field(default=None, ge=0, le=1, decimal_places=2)


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    display_order: int
    win_probability: float
    is_active: bool
    created_at: datetime


def _validate_action_payload(action_type: str, action_data: dict[str, Any]) -> dict[str, Any]:
    try:
        action = parse_action(action_type, action_data)
    except RuleExecutionError as exc:
        raise ValueError(exc.message) from exc
    return action.model_dump(mode="json", exclude={"type"})


class AutomationRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    from_stage_id: int | None = Field(default=None, gt=0)
    to_stage_id: int | None = Field(default=None, gt=0)
    action_type: ActionType
    action_data: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    is_active: bool = True

    @model_validator(mode="after")
    def validate_action_data(self) -> "AutomationRuleCreate":
        self.action_data = _validate_action_payload(self.action_type, self.action_data)
        return self


class AutomationRuleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    action_data: dict[str, Any] | None = None
    priority: int | None = None
    is_active: bool | None = None


class AutomationRuleRead(BaseModel):
    id: int
    name: str
    description: str | None
    from_stage_id: int | None
    from_stage_name: str | None
    to_stage_id: int | None
    to_stage_name: str | None
    action_type: str
    action_data: dict[str, Any]
    priority: int
    is_active: bool
    created_by_user_id: int | None
    created_at: datetime
    matches_all_transitions: bool


class AutomationRuleListRead(BaseModel):
    automation_rules: list[AutomationRuleRead]
    total_rules: int
    last_updated: datetime


class AutomationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    rule_id: int
    deal_id: int
    executed_by_user_id: int | None
    execution_result: ExecutionResult
    error_message: str | None
    executed_at: datetime


class StageAnalyticsRead(BaseModel):
    stage_id: int
    stage_name: str
    display_order: int
    win_probability: float
    deal_count: int
    total_value: float
    avg_deal_value: float
    avg_probability: float
    deals_last_30_days: int
    won_deals: int
    lost_deals: int
    win_rate: float
    conversion_rate: float


class PipelineSummaryRead(BaseModel):
    total_deals: int
    total_value: float
    avg_win_rate: float


class PipelineOverviewRead(BaseModel):
    pipeline_stages: list[StageAnalyticsRead]
    pipeline_summary: PipelineSummaryRead
    last_updated: datetime


class FunnelStageRead(BaseModel):
    stage_id: int
    stage_name: str
    display_order: int
    deals_entered: int
    value_entered: float
    deals_won: int
    deals_lost: int
    win_rate_percent: float


class FunnelMonthRead(BaseModel):
    month: str
    stages: list[FunnelStageRead]


class PipelineFunnelRead(BaseModel):
    funnel_data: list[FunnelMonthRead]
    total_months: int
    months: int
    last_updated: datetime
