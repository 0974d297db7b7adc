from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from app import audit
from app.metrics import observe_automation_execution
from app.pipeline.actions import (
    KNOWN_ACTION_TYPES,
    AutomationAction,
    CreateTaskAction,
    SendEmailAction,
    UnknownAction,
    UpdateProbabilityAction,
    parse_action,
)
from app.pipeline.errors import NotFoundError, RuleExecutionError, TransactionError, ValidationError
from app.pipeline.models import (
    Activity,
    AutomationLog,
    AutomationRule,
    Deal,
    EmailQueueEntry,
    PipelineStage,
    utcnow,
)
from app.pipeline.schemas import (
    AutomationLogRead,
    AutomationRuleCreate,
    AutomationRuleListRead,
    AutomationRuleRead,
    AutomationRuleUpdate,
    ExecutionOutcome,
)
from app.pipeline.security import ActorUser, can_modify_deal, require_elevated

logger = logging.getLogger("app.pipeline.automation")
tracer = trace.get_tracer("app.pipeline.automation")

_PROBABILITY_QUANT = Decimal("0.01")


def _matches_all_transitions(rule: AutomationRule) -> bool:
    return rule.from_stage_id is None and rule.to_stage_id is None


class AutomationRuleSelector:
    def select_rules(self, session: Session, from_stage_id: int, to_stage_id: int) -> list[AutomationRule]:
        """Active rules matching the transition, highest priority first, then oldest first."""
        rules = list(
            session.scalars(
                select(AutomationRule)
                .where(
                    AutomationRule.is_active.is_(True),
                    or_(AutomationRule.from_stage_id.is_(None), AutomationRule.from_stage_id == from_stage_id),
                    or_(AutomationRule.to_stage_id.is_(None), AutomationRule.to_stage_id == to_stage_id),
                )
                .order_by(
                    AutomationRule.priority.desc(),
                    AutomationRule.created_at.asc(),
                    AutomationRule.id.asc(),
                )
            )
        )
        for rule in rules:
            if _matches_all_transitions(rule):
                logger.warning(
                    "automation_rule_matches_all_transitions",
                    extra={"rule_id": rule.id, "from_stage_id": from_stage_id, "to_stage_id": to_stage_id},
                )
        return rules


class AutomationActionExecutor:
    """Runs matched rules against a deal inside the caller's transaction.

    Each rule gets its own SAVEPOINT. A failing rule rolls back only its own side
    effects; every rule, successful or not, leaves exactly one automation log row.
    """

    def __init__(self, selector: AutomationRuleSelector | None = None) -> None:
        self.selector = selector or AutomationRuleSelector()

    def run_rules(
        self,
        session: Session,
        deal: Deal,
        from_stage_id: int,
        to_stage_id: int,
        actor_user_id: int | None,
    ) -> list[ExecutionOutcome]:
        rules = self.selector.select_rules(session, from_stage_id, to_stage_id)
        return [self.execute(session, rule, deal, actor_user_id) for rule in rules]

    def execute(self, session: Session, rule: AutomationRule, deal: Deal, actor_user_id: int | None) -> ExecutionOutcome:
        error_message: str | None = None
        with tracer.start_as_current_span("pipeline.automation.rule") as span:
            span.set_attribute("rule_id", rule.id)
            span.set_attribute("deal_id", deal.id)
            span.set_attribute("action_type", rule.action_type)
            try:
                with session.begin_nested():
                    action = parse_action(rule.action_type, rule.action_data)
                    self._apply(session, action, rule, deal, actor_user_id)
            except RuleExecutionError as exc:
                error_message = exc.message
            except SQLAlchemyError as exc:
                error_message = str(exc.orig if getattr(exc, "orig", None) is not None else exc)
            except Exception as exc:
                logger.exception("automation_rule_crashed", extra={"rule_id": rule.id, "deal_id": deal.id})
                error_message = str(exc) or exc.__class__.__name__

            result = "failed" if error_message is not None else "success"
            span.set_attribute("execution_result", result)

        if error_message is not None:
            logger.warning(
                "automation_rule_failed",
                extra={
                    "rule_id": rule.id,
                    "deal_id": deal.id,
                    "action_type": rule.action_type,
                    "execution_result": result,
                    "error": error_message,
                },
            )

        session.add(
            AutomationLog(
                rule_id=rule.id,
                deal_id=deal.id,
                executed_by_user_id=actor_user_id,
                execution_result=result,
                error_message=error_message[:2000] if error_message else None,
            )
        )
        session.flush()
        observe_automation_execution(
            rule.action_type if rule.action_type in KNOWN_ACTION_TYPES else "unknown",
            result,
        )
        return ExecutionOutcome(
            rule_id=rule.id,
            rule_name=rule.name,
            action_type=rule.action_type,
            result=result,
            error_message=error_message,
        )

    def _apply(
        self,
        session: Session,
        action: AutomationAction,
        rule: AutomationRule,
        deal: Deal,
        actor_user_id: int | None,
    ) -> None:
        if isinstance(action, CreateTaskAction):
            session.add(
                Activity(
                    activity_type="task",
                    subject=action.title,
                    description=action.description,
                    deal_id=deal.id,
                    assigned_to_user_id=action.assigned_user_id or actor_user_id,
                    due_at=utcnow() + timedelta(days=action.days_from_now),
                    status="pending",
                )
            )
        elif isinstance(action, SendEmailAction):
            session.add(
                EmailQueueEntry(
                    deal_id=deal.id,
                    recipient_user_id=action.recipient_user_id or actor_user_id,
                    template_name=action.template,
                    template_data={
                        **action.template_data,
                        "deal_id": deal.id,
                        "deal_title": deal.title,
                        "rule": rule.name,
                    },
                    scheduled_at=utcnow(),
                    status="pending",
                )
            )
        elif isinstance(action, UpdateProbabilityAction):
            deal.probability = action.probability.quantize(_PROBABILITY_QUANT)
            session.add(deal)
        elif isinstance(action, UnknownAction):
            logger.warning(
                "automation_action_unknown",
                extra={"rule_id": rule.id, "deal_id": deal.id, "action_type": action.type},
            )


class AutomationRuleService:
    entity_type = "pipeline.automation_rule"

    def list_active_rules(self, session: Session) -> AutomationRuleListRead:
        rules = [self._to_read(rule, from_name, to_name) for rule, from_name, to_name in self._rule_rows(session)]
        return AutomationRuleListRead(automation_rules=rules, total_rules=len(rules), last_updated=utcnow())

    def get_rule(self, session: Session, rule_id: int) -> AutomationRuleRead:
        row = next(iter(self._rule_rows(session, rule_id=rule_id)), None)
        if row is None:
            raise NotFoundError("automation rule", rule_id)
        rule, from_name, to_name = row
        return self._to_read(rule, from_name, to_name)

    def create_rule(self, session: Session, actor_user: ActorUser, dto: AutomationRuleCreate) -> AutomationRuleRead:
        require_elevated(actor_user)
        for stage_id in (dto.from_stage_id, dto.to_stage_id):
            if stage_id is not None and session.get(PipelineStage, stage_id) is None:
                raise NotFoundError("pipeline stage", stage_id)

        rule = AutomationRule(
            name=dto.name,
            description=dto.description,
            from_stage_id=dto.from_stage_id,
            to_stage_id=dto.to_stage_id,
            action_type=dto.action_type,
            action_data=dto.action_data,
            priority=dto.priority,
            is_active=dto.is_active,
            created_by_user_id=actor_user.user_id,
        )
        session.add(rule)
        self._commit(session)
        if _matches_all_transitions(rule):
            logger.warning("automation_rule_matches_all_transitions", extra={"rule_id": rule.id})

        created = self.get_rule(session, rule.id)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return created

    def update_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: int,
        dto: AutomationRuleUpdate,
    ) -> AutomationRuleRead:
        require_elevated(actor_user)
        before = self.get_rule(session, rule_id)
        rule = session.get(AutomationRule, rule_id)
        if rule is None:
            raise NotFoundError("automation rule", rule_id)

        changes = dto.model_dump(exclude_unset=True)
        if "action_data" in changes:
            try:
                action = parse_action(rule.action_type, changes["action_data"])
            except RuleExecutionError as exc:
                raise ValidationError(exc.message) from exc
            changes["action_data"] = action.model_dump(mode="json", exclude={"type"})
        for key, value in changes.items():
            if key in {"name", "is_active", "priority"} and value is None:
                raise ValidationError(f"{key} cannot be null")
            setattr(rule, key, value)

        session.add(rule)
        self._commit(session)
        updated = self.get_rule(session, rule_id)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule_id),
            action="update",
            before=before.model_dump(mode="json"),
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return updated

    def list_logs(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        deal_id: int | None = None,
        rule_id: int | None = None,
        limit: int = 100,
    ) -> list[AutomationLogRead]:
        if deal_id is not None:
            deal = session.get(Deal, deal_id)
            if deal is None:
                raise NotFoundError("deal", deal_id)
            if not can_modify_deal(actor_user, deal):
                require_elevated(actor_user)
        else:
            require_elevated(actor_user)

        stmt = select(AutomationLog)
        if deal_id is not None:
            stmt = stmt.where(AutomationLog.deal_id == deal_id)
        if rule_id is not None:
            stmt = stmt.where(AutomationLog.rule_id == rule_id)
        stmt = stmt.order_by(AutomationLog.executed_at.desc(), AutomationLog.id.desc()).limit(limit)
        return [AutomationLogRead.model_validate(entry) for entry in session.scalars(stmt)]

    def _rule_rows(self, session: Session, rule_id: int | None = None):  # type: ignore[no-untyped-def]
        from_stage = aliased(PipelineStage)
        to_stage = aliased(PipelineStage)
        stmt = (
            select(AutomationRule, from_stage.name, to_stage.name)
            .outerjoin(from_stage, AutomationRule.from_stage_id == from_stage.id)
            .outerjoin(to_stage, AutomationRule.to_stage_id == to_stage.id)
        )
        if rule_id is None:
            stmt = stmt.where(AutomationRule.is_active.is_(True)).order_by(
                AutomationRule.priority.desc(),
                AutomationRule.created_at.desc(),
                AutomationRule.id.desc(),
            )
        else:
            stmt = stmt.where(AutomationRule.id == rule_id)
        return session.execute(stmt).all()

    def _to_read(self, rule: AutomationRule, from_stage_name: str | None, to_stage_name: str | None) -> AutomationRuleRead:
        return AutomationRuleRead.model_validate(
            {
                "id": rule.id,
                "name": rule.name,
                "description": rule.description,
                "from_stage_id": rule.from_stage_id,
                "from_stage_name": from_stage_name,
                "to_stage_id": rule.to_stage_id,
                "to_stage_name": to_stage_name,
                "action_type": rule.action_type,
                "action_data": rule.action_data or {},
                "priority": rule.priority,
                "is_active": rule.is_active,
                "created_by_user_id": rule.created_by_user_id,
                "created_at": rule.created_at,
                "matches_all_transitions": _matches_all_transitions(rule),
            }
        )

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise TransactionError("failed to persist automation rule") from exc


automation_rule_selector = AutomationRuleSelector()
automation_action_executor = AutomationActionExecutor(automation_rule_selector)
automation_rule_service = AutomationRuleService()
