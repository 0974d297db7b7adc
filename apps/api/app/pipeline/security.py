from __future__ import annotations

from dataclasses import dataclass, field

from app.core.config import get_settings
from app.pipeline.errors import PermissionDeniedError
from app.pipeline.models import Deal


@dataclass
class ActorUser:
    user_id: int | None
    roles: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def is_elevated(actor_user: ActorUser) -> bool:
    elevated_roles = {role.lower() for role in get_settings().pipeline_elevated_roles}
    return any(role.lower() in elevated_roles for role in actor_user.roles)


def require_elevated(actor_user: ActorUser) -> None:
    if not is_elevated(actor_user):
        raise PermissionDeniedError("administrator role required")


def can_modify_deal(actor_user: ActorUser, deal: Deal) -> bool:
    if is_elevated(actor_user):
        return True
    return actor_user.user_id is not None and deal.assigned_user_id == actor_user.user_id


def require_deal_access(actor_user: ActorUser, deal: Deal) -> None:
    if not can_modify_deal(actor_user, deal):
        raise PermissionDeniedError("not authorized to modify this deal", details={"deal_id": deal.id})


def require_authenticated(actor_user: ActorUser) -> None:
    if actor_user.user_id is None and not is_elevated(actor_user):
        raise PermissionDeniedError("authentication required")


def require_analytics_scope(actor_user: ActorUser, assigned_user_id: int | None) -> None:
    """Reps may read the team-wide view or their own slice; only elevated roles see another rep's pipeline."""
    require_authenticated(actor_user)
    if assigned_user_id is None or assigned_user_id == actor_user.user_id or is_elevated(actor_user):
        return
    raise PermissionDeniedError(
        "not authorized to view another user's pipeline", details={"assigned_user_id": assigned_user_id}
    )
