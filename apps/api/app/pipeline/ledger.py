from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.pipeline.models import DealStageHistory


class StageHistoryLedger:
    """Append-only record of stage changes.

    Rows are written inside the caller's transaction and never updated or deleted,
    so a deal's history is exactly the sequence of committed transitions.
    """

    def append(
        self,
        session: Session,
        *,
        deal_id: int,
        from_stage_id: int | None,
        to_stage_id: int,
        changed_by_user_id: int | None,
        notes: str | None,
    ) -> DealStageHistory:
        entry = DealStageHistory(
            deal_id=deal_id,
            from_stage_id=from_stage_id,
            to_stage_id=to_stage_id,
            changed_by_user_id=changed_by_user_id,
            notes=notes or "",
        )
        session.add(entry)
        session.flush()
        return entry

    def list_for_deal(self, session: Session, deal_id: int) -> list[DealStageHistory]:
        return list(
            session.scalars(
                select(DealStageHistory)
                .where(DealStageHistory.deal_id == deal_id)
                .order_by(DealStageHistory.created_at.asc(), DealStageHistory.id.asc())
            )
        )


stage_history_ledger = StageHistoryLedger()
