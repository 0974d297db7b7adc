from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy import select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from app import audit, events
from app.core.config import get_settings
from app.metrics import observe_stage_transition
from app.pipeline.automation import AutomationActionExecutor, automation_action_executor
from app.pipeline.errors import NotFoundError, PipelineError, TransactionError, ValidationError
from app.pipeline.ledger import StageHistoryLedger, stage_history_ledger
from app.pipeline.models import Deal, PipelineStage, utcnow
from app.pipeline.schemas import DealRead, ExecutionOutcome, StageHistoryRead, TransitionSummary
from app.pipeline.security import ActorUser, require_deal_access

logger = logging.getLogger("app.pipeline.transitions")
tracer = trace.get_tracer("app.pipeline.transitions")

STAGE_CHANGED_EVENT = "pipeline.deal.stage_changed"


class _VersionConflict(Exception):
    pass


def format_probability_change(previous: Decimal, current: Decimal) -> str:
    return f"{_as_percent(previous)}% → {_as_percent(current)}%"


def _as_percent(value: Decimal) -> str:
    return f"{(Decimal(value) * 100).normalize():f}"


def to_deal_read(deal: Deal, stage_name: str) -> DealRead:
    return DealRead.model_validate(
        {
            "id": deal.id,
            "title": deal.title,
            "company_id": deal.company_id,
            "assigned_user_id": deal.assigned_user_id,
            "pipeline_stage_id": deal.pipeline_stage_id,
            "stage_name": stage_name,
            "value": deal.value,
            "currency": deal.currency,
            "probability": deal.probability,
            "status": deal.status,
            "expected_close_date": deal.expected_close_date,
            "created_at": deal.created_at,
            "updated_at": deal.updated_at,
            "row_version": deal.row_version,
        }
    )


class StageTransitionCoordinator:
    """Moves a deal between pipeline stages as one atomic unit of work.

    Stage, probability, the history row and every automation side effect are
    committed together or not at all. Same-deal writers are serialised by a
    row lock (an immediate write transaction on SQLite) and checked by a
    ``row_version`` compare-and-set, with a bounded number of retries on conflict.
    """

    def __init__(
        self,
        ledger: StageHistoryLedger | None = None,
        executor: AutomationActionExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger or stage_history_ledger
        self.executor = executor or automation_action_executor
        self._clock = clock

    def transition_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: int,
        target_stage_id: int,
        *,
        notes: str | None = None,
        trigger_automation: bool = True,
    ) -> tuple[DealRead, TransitionSummary]:
        settings = get_settings()
        started = self._clock()
        deadline = started + settings.transition_timeout_seconds
        max_attempts = max(1, settings.transition_max_retries)

        with tracer.start_as_current_span("pipeline.deal.transition_stage") as span:
            span.set_attribute("deal_id", deal_id)
            span.set_attribute("to_stage_id", target_stage_id)
            span.set_attribute("correlation_id", actor_user.correlation_id or "")

            for attempt in range(1, max_attempts + 1):
                try:
                    deal_read, summary = self._attempt(
                        session,
                        actor_user,
                        deal_id,
                        target_stage_id,
                        notes=notes,
                        trigger_automation=trigger_automation,
                        deadline=deadline,
                    )
                except _VersionConflict:
                    session.rollback()
                    logger.info("transition_conflict_retry", extra={"deal_id": deal_id, "attempt": attempt})
                    continue
                except PipelineError as exc:
                    session.rollback()
                    observe_stage_transition(exc.code)
                    raise
                except SQLAlchemyError as exc:
                    session.rollback()
                    observe_stage_transition("transaction_failed")
                    logger.error(
                        "transition_aborted",
                        extra={"deal_id": deal_id, "to_stage_id": target_stage_id, "attempt": attempt, "error": str(exc)},
                    )
                    raise TransactionError("stage transition could not be committed") from exc
                break
            else:
                observe_stage_transition("conflict")
                logger.error(
                    "transition_aborted",
                    extra={"deal_id": deal_id, "to_stage_id": target_stage_id, "attempt": max_attempts, "error": "row_version conflict"},
                )
                raise TransactionError(
                    "deal was modified concurrently; retries exhausted",
                    details={"deal_id": deal_id, "attempts": max_attempts},
                )

            span.set_attribute("from_stage_id", summary.from_stage_id)
            span.set_attribute("automation_rules", len(summary.automation_outcomes))

        duration = self._clock() - started
        observe_stage_transition("success", duration)
        self._after_commit(actor_user, deal_read, summary)
        return deal_read, summary

    def _attempt(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: int,
        target_stage_id: int,
        *,
        notes: str | None,
        trigger_automation: bool,
        deadline: float,
    ) -> tuple[DealRead, TransitionSummary]:
        self._apply_statement_timeout(session, deadline)

        current_stage = aliased(PipelineStage)
        target_stage = aliased(PipelineStage)
        row = session.execute(
            select(Deal, current_stage, target_stage)
            .join(current_stage, Deal.pipeline_stage_id == current_stage.id)
            .outerjoin(target_stage, target_stage.id == target_stage_id)
            .where(Deal.id == deal_id)
            .with_for_update(of=Deal)
            .execution_options(populate_existing=True)
        ).first()
        if row is None:
            raise NotFoundError("deal", deal_id)
        deal, from_stage, to_stage = row
        require_deal_access(actor_user, deal)
        if to_stage is None:
            raise NotFoundError("pipeline stage", target_stage_id)
        if not to_stage.is_active:
            raise ValidationError("target stage is inactive", details={"stage_id": target_stage_id})

        from_stage_id = from_stage.id
        from_stage_name = from_stage.name
        to_stage_name = to_stage.name
        previous_probability = Decimal(deal.probability)
        new_probability = Decimal(to_stage.win_probability)

        result = session.execute(
            update(Deal)
            .where(Deal.id == deal.id, Deal.row_version == deal.row_version)
            .values(
                pipeline_stage_id=to_stage.id,
                probability=new_probability,
                updated_at=utcnow(),
                row_version=Deal.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise _VersionConflict()
        session.refresh(deal)

        history = self.ledger.append(
            session,
            deal_id=deal.id,
            from_stage_id=from_stage_id,
            to_stage_id=to_stage.id,
            changed_by_user_id=actor_user.user_id,
            notes=notes,
        )

        outcomes: list[ExecutionOutcome] = []
        if trigger_automation:
            outcomes = self.executor.run_rules(session, deal, from_stage_id, to_stage.id, actor_user.user_id)

        if self._clock() > deadline:
            raise TransactionError("stage transition exceeded its time budget", details={"deal_id": deal.id})

        session.flush()
        deal_read = to_deal_read(deal, to_stage_name)
        summary = TransitionSummary(
            deal_id=deal.id,
            from_stage_id=from_stage_id,
            from_stage_name=from_stage_name,
            to_stage_id=to_stage.id,
            to_stage_name=to_stage_name,
            previous_probability=previous_probability,
            new_probability=Decimal(deal.probability),
            probability_change=format_probability_change(previous_probability, Decimal(deal.probability)),
            automation_triggered=trigger_automation,
            history_id=history.id,
            automation_outcomes=outcomes,
        )
        session.commit()
        return deal_read, summary

    def _apply_statement_timeout(self, session: Session, deadline: float) -> None:
        if session.get_bind().dialect.name != "postgresql":
            return
        remaining_ms = max(1, int((deadline - self._clock()) * 1000))
        session.execute(text(f"SET LOCAL statement_timeout = {remaining_ms}"))

    def _after_commit(self, actor_user: ActorUser, deal_read: DealRead, summary: TransitionSummary) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="pipeline.deal",
            entity_id=str(deal_read.id),
            action="transition_stage",
            before={"pipeline_stage_id": summary.from_stage_id, "probability": str(summary.previous_probability)},
            after={"pipeline_stage_id": summary.to_stage_id, "probability": str(summary.new_probability)},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": STAGE_CHANGED_EVENT,
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor_user.user_id,
                "version": 1,
                "payload": {
                    "deal_id": deal_read.id,
                    "assigned_user_id": deal_read.assigned_user_id,
                    "from_stage_id": summary.from_stage_id,
                    "to_stage_id": summary.to_stage_id,
                    "probability": str(summary.new_probability),
                    "automation_triggered": summary.automation_triggered,
                },
            }
        )
        logger.info(
            "deal_stage_transitioned",
            extra={
                "deal_id": deal_read.id,
                "from_stage_id": summary.from_stage_id,
                "to_stage_id": summary.to_stage_id,
            },
        )

    def stage_history(self, session: Session, actor_user: ActorUser, deal_id: int) -> list[StageHistoryRead]:
        deal = session.get(Deal, deal_id)
        if deal is None:
            raise NotFoundError("deal", deal_id)
        require_deal_access(actor_user, deal)
        return [StageHistoryRead.model_validate(entry) for entry in self.ledger.list_for_deal(session, deal_id)]


stage_transition_coordinator = StageTransitionCoordinator()
