from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.pipeline.analytics import DEFAULT_FUNNEL_MONTHS, MAX_FUNNEL_MONTHS, PipelineAnalyticsService
from app.pipeline.automation import automation_rule_service
from app.pipeline.cache import CacheBackend, get_cache_backend
from app.pipeline.coordinator import stage_transition_coordinator
from app.pipeline.errors import PipelineError
from app.pipeline.schemas import (
    AutomationLogRead,
    AutomationRuleCreate,
    AutomationRuleListRead,
    AutomationRuleRead,
    AutomationRuleUpdate,
    PipelineFunnelRead,
    PipelineOverviewRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageUpdate,
    StageHistoryRead,
    StageTransitionRequest,
    StageTransitionResponse,
    TransitionRead,
)
from app.pipeline.models import utcnow
from app.pipeline.security import ActorUser, require_analytics_scope, require_authenticated
from app.pipeline.stages import pipeline_stage_service

deals_router = APIRouter(prefix="/api/deals", tags=["pipeline.deals"])
router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def pipeline_error_response(request: Request, exc: PipelineError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(user_id=auth_user.numeric_id, roles=set(auth_user.roles), correlation_id=correlation_id)


def get_analytics_service(cache: CacheBackend = Depends(get_cache_backend)) -> PipelineAnalyticsService:
    return PipelineAnalyticsService(cache, get_settings().analytics_cache_ttl_seconds)


@deals_router.put("/{deal_id}/stage", response_model=StageTransitionResponse)
def transition_deal_stage(
    request: Request,
    deal_id: int,
    dto: StageTransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageTransitionResponse | JSONResponse:
    try:
        deal, summary = stage_transition_coordinator.transition_stage(
            db,
            user,
            deal_id,
            dto.stage_id,
            notes=dto.notes,
            trigger_automation=dto.trigger_automation,
        )
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
    return StageTransitionResponse(
        deal=deal,
        transition=TransitionRead(
            from_stage=summary.from_stage_name,
            to_stage=summary.to_stage_name,
            probability_change=summary.probability_change,
        ),
        automation_triggered=summary.automation_triggered,
        timestamp=utcnow(),
    )


@deals_router.get("/{deal_id}/stage-history", response_model=list[StageHistoryRead])
def get_deal_stage_history(
    request: Request,
    deal_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageHistoryRead] | JSONResponse:
    try:
        return stage_transition_coordinator.stage_history(db, user, deal_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/stages", response_model=list[PipelineStageRead])
def list_pipeline_stages(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_authenticated(user)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
    return pipeline_stage_service.list_stages(db, include_inactive=include_inactive)


@router.post("/stages", response_model=PipelineStageRead, status_code=status.HTTP_201_CREATED)
def create_pipeline_stage(
    request: Request,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        return pipeline_stage_service.create_stage(db, user, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.patch("/stages/{stage_id}", response_model=PipelineStageRead)
def update_pipeline_stage(
    request: Request,
    stage_id: int,
    dto: PipelineStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        return pipeline_stage_service.update_stage(db, user, stage_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/automation/rules", response_model=AutomationRuleListRead)
def list_automation_rules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleListRead | JSONResponse:
    try:
        require_authenticated(user)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
    return automation_rule_service.list_active_rules(db)


@router.post("/automation/rules", response_model=AutomationRuleRead, status_code=status.HTTP_201_CREATED)
def create_automation_rule(
    request: Request,
    dto: AutomationRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        return automation_rule_service.create_rule(db, user, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.patch("/automation/rules/{rule_id}", response_model=AutomationRuleRead)
def update_automation_rule(
    request: Request,
    rule_id: int,
    dto: AutomationRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        return automation_rule_service.update_rule(db, user, rule_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/automation/logs", response_model=list[AutomationLogRead])
def list_automation_logs(
    request: Request,
    deal_id: int | None = Query(default=None, gt=0),
    rule_id: int | None = Query(default=None, gt=0),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationLogRead] | JSONResponse:
    try:
        return automation_rule_service.list_logs(db, user, deal_id=deal_id, rule_id=rule_id, limit=limit)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/analytics/overview", response_model=PipelineOverviewRead)
def get_pipeline_overview(
    request: Request,
    assigned_user_id: int | None = Query(default=None, gt=0),
    db: Session = Depends(get_db),
    analytics: PipelineAnalyticsService = Depends(get_analytics_service),
    user: ActorUser = Depends(get_current_user),
) -> PipelineOverviewRead | JSONResponse:
    try:
        require_analytics_scope(user, assigned_user_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
    return analytics.get_overview(db, assigned_user_id=assigned_user_id)


@router.get("/analytics/funnel", response_model=PipelineFunnelRead)
def get_pipeline_funnel(
    request: Request,
    months: int = Query(default=DEFAULT_FUNNEL_MONTHS, ge=1, le=MAX_FUNNEL_MONTHS),
    db: Session = Depends(get_db),
    analytics: PipelineAnalyticsService = Depends(get_analytics_service),
    user: ActorUser = Depends(get_current_user),
) -> PipelineFunnelRead | JSONResponse:
    try:
        require_authenticated(user)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
    return analytics.get_funnel(db, months=months)
