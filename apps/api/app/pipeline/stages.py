from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit
from app.pipeline.errors import NotFoundError, TransactionError, ValidationError
from app.pipeline.models import PipelineStage
from app.pipeline.schemas import PipelineStageCreate, PipelineStageRead, PipelineStageUpdate
from app.pipeline.security import ActorUser, require_elevated


class PipelineStageService:
    entity_type = "pipeline.stage"

    def list_stages(self, session: Session, include_inactive: bool = False) -> list[PipelineStageRead]:
        stmt = select(PipelineStage).order_by(PipelineStage.display_order.asc())
        if not include_inactive:
            stmt = stmt.where(PipelineStage.is_active.is_(True))
        return [PipelineStageRead.model_validate(stage) for stage in session.scalars(stmt)]

    def create_stage(self, session: Session, actor_user: ActorUser, dto: PipelineStageCreate) -> PipelineStageRead:
        require_elevated(actor_user)
        stage = PipelineStage(
            name=dto.name,
            display_order=dto.display_order,
            win_probability=dto.win_probability,
            is_active=dto.is_active,
        )
        session.add(stage)
        self._commit(session)
        created = PipelineStageRead.model_validate(stage)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return created

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: int,
        dto: PipelineStageUpdate,
    ) -> PipelineStageRead:
        """Only activation and win probability are editable; stages are never deleted."""
        require_elevated(actor_user)
        stage = session.get(PipelineStage, stage_id)
        if stage is None:
            raise NotFoundError("pipeline stage", stage_id)

        before = PipelineStageRead.model_validate(stage).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True)
        for key, value in changes.items():
            if value is None:
                raise ValidationError(f"{key} cannot be null")
            setattr(stage, key, value)

        session.add(stage)
        self._commit(session)
        updated = PipelineStageRead.model_validate(stage)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return updated

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ValidationError("display_order must be unique") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise TransactionError("failed to persist pipeline stage") from exc


pipeline_stage_service = PipelineStageService()
