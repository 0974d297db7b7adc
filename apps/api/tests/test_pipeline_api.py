from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.auth import AuthUser
from app.core.config import get_settings
from app.core.database import Base, enable_sqlite_savepoints, get_db
from app.main import app
from app.pipeline.api import get_current_user as pipeline_get_current_user
from app.pipeline.cache import InMemoryCacheBackend, get_cache_backend
from app.pipeline.models import AutomationRule, Deal, DealStageHistory, PipelineStage
from app.pipeline.security import ActorUser


REP = ActorUser(user_id=7, roles={"sales_rep"})
OTHER_REP = ActorUser(user_id=8, roles={"sales_rep"})
ADMIN = ActorUser(user_id=1, roles={"admin"})


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = enable_sqlite_savepoints(
        create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def actor() -> dict[str, ActorUser]:
    return {"user": REP}


@pytest.fixture()
def cache() -> InMemoryCacheBackend:
    return InMemoryCacheBackend()


@pytest.fixture()
def client(
    db_session: Session,
    actor: dict[str, ActorUser],
    cache: InMemoryCacheBackend,
) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        current = actor["user"]
        return ActorUser(
            user_id=current.user_id,
            roles=set(current.roles),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[pipeline_get_current_user] = override_get_current_user
    app.dependency_overrides[get_cache_backend] = lambda: cache
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def stages(db_session: Session) -> dict[str, PipelineStage]:
    seeded = {
        "lead": PipelineStage(name="Lead", display_order=1, win_probability=Decimal("0.10")),
        "qualified": PipelineStage(name="Qualified", display_order=2, win_probability=Decimal("0.25")),
        "proposal": PipelineStage(name="Proposal", display_order=3, win_probability=Decimal("0.50")),
        "archived": PipelineStage(name="Archived", display_order=9, win_probability=Decimal("0.00"), is_active=False),
    }
    db_session.add_all(seeded.values())
    db_session.commit()
    return seeded


@pytest.fixture()
def deal(db_session: Session, stages: dict[str, PipelineStage]) -> Deal:
    created = Deal(
        title="Initech rollout",
        assigned_user_id=7,
        pipeline_stage_id=stages["lead"].id,
        value=Decimal("2500.00"),
        probability=Decimal("0.10"),
    )
    db_session.add(created)
    db_session.commit()
    return created


def test_transition_endpoint_returns_updated_deal(
    client: TestClient, stages: dict[str, PipelineStage], deal: Deal
) -> None:
    response = client.put(
        f"/api/deals/{deal.id}/stage",
        json={"stage_id": stages["proposal"].id, "notes": "Verbal yes"},
        headers={"X-Correlation-Id": "put-corr-1"},
    )

    assert response.status_code == 200
    assert response.headers["x-correlation-id"] == "put-corr-1"
    body = response.json()
    assert body["success"] is True
    assert body["deal"]["id"] == deal.id
    assert body["deal"]["pipeline_stage_id"] == stages["proposal"].id
    assert body["deal"]["stage_name"] == "Proposal"
    assert body["deal"]["probability"] == 0.5
    assert body["deal"]["value"] == 2500.0
    assert body["transition"] == {"from_stage": "Lead", "to_stage": "Proposal", "probability_change": "10% → 50%"}
    assert body["automation_triggered"] is True
    assert body["timestamp"]
    assert audit.audit_entries[-1]["correlation_id"] == "put-corr-1"


@pytest.mark.parametrize(
    "payload",
    [
        {"stage_id": 0},
        {"stage_id": -3},
        {"notes": "missing stage"},
        {"stage_id": 2, "notes": "x" * 501},
        {"stage_id": "two"},
    ],
)
def test_transition_endpoint_rejects_malformed_requests(
    client: TestClient, deal: Deal, db_session: Session, payload: dict
) -> None:
    response = client.put(f"/api/deals/{deal.id}/stage", json=payload, headers={"X-Correlation-Id": "bad-corr-1"})

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["correlation_id"] == "bad-corr-1"
    assert isinstance(body["details"], list)
    assert db_session.scalars(select(DealStageHistory)).all() == []


def test_transition_endpoint_maps_domain_errors(
    client: TestClient,
    actor: dict[str, ActorUser],
    stages: dict[str, PipelineStage],
    deal: Deal,
    db_session: Session,
) -> None:
    missing_deal = client.put("/api/deals/999/stage", json={"stage_id": stages["proposal"].id})
    assert missing_deal.status_code == 404
    assert missing_deal.json()["code"] == "not_found"

    missing_stage = client.put(f"/api/deals/{deal.id}/stage", json={"stage_id": 999})
    assert missing_stage.status_code == 404
    assert missing_stage.json()["details"] == {"resource": "pipeline stage", "id": 999}

    inactive = client.put(f"/api/deals/{deal.id}/stage", json={"stage_id": stages["archived"].id})
    assert inactive.status_code == 400
    assert inactive.json()["code"] == "validation_error"

    actor["user"] = OTHER_REP
    forbidden = client.put(
        f"/api/deals/{deal.id}/stage",
        json={"stage_id": stages["proposal"].id},
        headers={"X-Correlation-Id": "deny-corr-1"},
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "permission_denied"
    assert forbidden.json()["correlation_id"] == "deny-corr-1"

    stored = db_session.get(Deal, deal.id)
    assert stored is not None
    assert stored.pipeline_stage_id == stages["lead"].id
    assert db_session.scalars(select(DealStageHistory)).all() == []


def test_stage_history_endpoint_lists_transitions_in_order(
    client: TestClient,
    actor: dict[str, ActorUser],
    stages: dict[str, PipelineStage],
    deal: Deal,
) -> None:
    assert client.put(f"/api/deals/{deal.id}/stage", json={"stage_id": stages["qualified"].id}).status_code == 200
    assert (
        client.put(
            f"/api/deals/{deal.id}/stage",
            json={"stage_id": stages["proposal"].id, "notes": "Pricing agreed"},
        ).status_code
        == 200
    )

    response = client.get(f"/api/deals/{deal.id}/stage-history")
    assert response.status_code == 200
    history = response.json()
    assert [(entry["from_stage_id"], entry["to_stage_id"]) for entry in history] == [
        (stages["lead"].id, stages["qualified"].id),
        (stages["qualified"].id, stages["proposal"].id),
    ]
    assert history[0]["notes"] == ""
    assert history[1]["notes"] == "Pricing agreed"
    assert history[1]["changed_by_user_id"] == 7

    actor["user"] = OTHER_REP
    assert client.get(f"/api/deals/{deal.id}/stage-history").status_code == 403
    assert client.get("/api/deals/999/stage-history").status_code == 404


def test_stage_endpoints_list_create_and_update(
    client: TestClient,
    actor: dict[str, ActorUser],
    stages: dict[str, PipelineStage],
) -> None:
    listed = client.get("/api/pipeline/stages")
    assert listed.status_code == 200
    assert [stage["name"] for stage in listed.json()] == ["Lead", "Qualified", "Proposal"]

    everything = client.get("/api/pipeline/stages", params={"include_inactive": "true"})
    assert [stage["name"] for stage in everything.json()] == ["Lead", "Qualified", "Proposal", "Archived"]

    payload = {"name": "Negotiation", "display_order": 4, "win_probability": "0.75"}
    assert client.post("/api/pipeline/stages", json=payload).status_code == 403

    actor["user"] = ADMIN
    created = client.post("/api/pipeline/stages", json=payload)
    assert created.status_code == 201
    assert created.json()["win_probability"] == 0.75

    duplicate = client.post("/api/pipeline/stages", json={"name": "Clone", "display_order": 4, "win_probability": "0.10"})
    assert duplicate.status_code == 400
    assert duplicate.json()["message"] == "display_order must be unique"

    renamed = client.patch(f"/api/pipeline/stages/{stages['lead'].id}", json={"name": "Prospect"})
    assert renamed.status_code == 400

    deactivated = client.patch(f"/api/pipeline/stages/{stages['lead'].id}", json={"is_active": False})
    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False
    assert deactivated.json()["name"] == "Lead"

    assert client.patch("/api/pipeline/stages/999", json={"is_active": True}).status_code == 404
    assert [entry["entity_type"] for entry in audit.audit_entries] == ["pipeline.stage", "pipeline.stage"]


def test_rule_endpoints_create_list_and_update(
    client: TestClient,
    actor: dict[str, ActorUser],
    stages: dict[str, PipelineStage],
) -> None:
    payload = {
        "name": "Proposal follow up",
        "to_stage_id": stages["proposal"].id,
        "action_type": "create_task",
        "action_data": {"title": "Chase signature"},
        "priority": 5,
    }
    assert client.post("/api/pipeline/automation/rules", json=payload).status_code == 403

    actor["user"] = ADMIN
    created = client.post("/api/pipeline/automation/rules", json=payload)
    assert created.status_code == 201
    rule = created.json()
    assert rule["to_stage_name"] == "Proposal"
    assert rule["from_stage_name"] is None
    assert rule["matches_all_transitions"] is False
    assert rule["created_by_user_id"] == 1
    assert rule["action_data"] == {
        "title": "Chase signature",
        "description": "Automated task created",
        "days_from_now": 1,
        "assigned_user_id": None,
    }

    catch_all = client.post(
        "/api/pipeline/automation/rules",
        json={"name": "Notify", "action_type": "send_email", "priority": 1},
    )
    assert catch_all.status_code == 201
    assert catch_all.json()["matches_all_transitions"] is True

    listed = client.get("/api/pipeline/automation/rules")
    assert listed.status_code == 200
    assert listed.json()["total_rules"] == 2
    assert [item["name"] for item in listed.json()["automation_rules"]] == ["Proposal follow up", "Notify"]

    disabled = client.patch(f"/api/pipeline/automation/rules/{rule['id']}", json={"is_active": False})
    assert disabled.status_code == 200
    assert disabled.json()["is_active"] is False
    assert [item["name"] for item in client.get("/api/pipeline/automation/rules").json()["automation_rules"]] == ["Notify"]

    bad_update = client.patch(f"/api/pipeline/automation/rules/{rule['id']}", json={"action_data": {"days_from_now": -2}})
    assert bad_update.status_code == 400
    null_name = client.patch(f"/api/pipeline/automation/rules/{rule['id']}", json={"name": None})
    assert null_name.status_code == 400
    assert client.patch("/api/pipeline/automation/rules/999", json={"priority": 2}).status_code == 404


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "Bad probability", "action_type": "update_probability", "action_data": {"probability": 2}},
        {"name": "Missing probability", "action_type": "update_probability", "action_data": {}},
        {"name": "Webhook", "action_type": "post_to_webhook", "action_data": {}},
        {"name": "", "action_type": "create_task"},
    ],
)
def test_rule_creation_rejects_invalid_definitions(
    client: TestClient, actor: dict[str, ActorUser], db_session: Session, payload: dict
) -> None:
    actor["user"] = ADMIN

    response = client.post("/api/pipeline/automation/rules", json=payload)

    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"
    assert db_session.scalars(select(AutomationRule)).all() == []


def test_rule_creation_requires_existing_stages(client: TestClient, actor: dict[str, ActorUser]) -> None:
    actor["user"] = ADMIN

    response = client.post(
        "/api/pipeline/automation/rules",
        json={"name": "Ghost", "from_stage_id": 404, "action_type": "create_task"},
    )

    assert response.status_code == 404
    assert response.json()["details"] == {"resource": "pipeline stage", "id": 404}


def test_automation_logs_endpoint_scopes_access(
    client: TestClient,
    actor: dict[str, ActorUser],
    db_session: Session,
    stages: dict[str, PipelineStage],
    deal: Deal,
) -> None:
    rule = AutomationRule(name="Qualify task", to_stage_id=stages["qualified"].id, action_type="create_task", action_data={})
    db_session.add(rule)
    db_session.commit()

    transition = client.put(f"/api/deals/{deal.id}/stage", json={"stage_id": stages["qualified"].id})
    assert transition.status_code == 200

    own = client.get("/api/pipeline/automation/logs", params={"deal_id": deal.id})
    assert own.status_code == 200
    assert [(entry["rule_id"], entry["execution_result"]) for entry in own.json()] == [(rule.id, "success")]

    assert client.get("/api/pipeline/automation/logs").status_code == 403

    actor["user"] = OTHER_REP
    assert client.get("/api/pipeline/automation/logs", params={"deal_id": deal.id}).status_code == 403

    actor["user"] = ADMIN
    by_rule = client.get("/api/pipeline/automation/logs", params={"rule_id": rule.id})
    assert by_rule.status_code == 200
    assert len(by_rule.json()) == 1


def test_transition_without_automation_skips_rules(
    client: TestClient, db_session: Session, stages: dict[str, PipelineStage], deal: Deal
) -> None:
    db_session.add(AutomationRule(name="Any", action_type="create_task", action_data={}))
    db_session.commit()

    response = client.put(
        f"/api/deals/{deal.id}/stage",
        json={"stage_id": stages["qualified"].id, "trigger_automation": False},
    )

    assert response.status_code == 200
    assert response.json()["automation_triggered"] is False
    assert client.get("/api/pipeline/automation/logs", params={"deal_id": deal.id}).json() == []


def test_overview_endpoint_serves_identical_cached_bodies(
    client: TestClient, db_session: Session, stages: dict[str, PipelineStage], deal: Deal
) -> None:
    first = client.get("/api/pipeline/analytics/overview")
    assert first.status_code == 200
    assert first.json()["pipeline_summary"]["total_deals"] == 1

    db_session.add(Deal(title="Second", pipeline_stage_id=stages["lead"].id, value=Decimal("10.00")))
    db_session.commit()

    second = client.get("/api/pipeline/analytics/overview")
    assert second.status_code == 200
    assert second.content == first.content

    scoped = client.get("/api/pipeline/analytics/overview", params={"assigned_user_id": 7})
    assert scoped.json()["pipeline_summary"]["total_deals"] == 1


def test_read_routes_are_scoped_to_the_caller(
    client: TestClient, actor: dict[str, ActorUser], stages: dict[str, PipelineStage], deal: Deal
) -> None:
    actor["user"] = OTHER_REP
    denied = client.get("/api/pipeline/analytics/overview", params={"assigned_user_id": 7})
    assert denied.status_code == 403
    assert denied.json()["code"] == "permission_denied"
    assert denied.json()["details"] == {"assigned_user_id": 7}
    assert client.get("/api/pipeline/analytics/overview", params={"assigned_user_id": 8}).status_code == 200
    assert client.get("/api/pipeline/analytics/overview").status_code == 200

    actor["user"] = ADMIN
    assert client.get("/api/pipeline/analytics/overview", params={"assigned_user_id": 7}).status_code == 200

    actor["user"] = ActorUser(user_id=None, roles={"guest"})
    for path in (
        "/api/pipeline/stages",
        "/api/pipeline/automation/rules",
        "/api/pipeline/analytics/overview",
        "/api/pipeline/analytics/funnel",
    ):
        response = client.get(path)
        assert response.status_code == 403, path
        assert response.json()["code"] == "permission_denied"


def test_transition_invalidates_analytics_when_enabled(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    stages: dict[str, PipelineStage],
    deal: Deal,
) -> None:
    monkeypatch.setenv("ANALYTICS_INVALIDATE_ON_TRANSITION", "true")
    get_settings.cache_clear()

    before = client.get("/api/pipeline/analytics/overview").json()
    assert before["pipeline_stages"][0]["deal_count"] == 1

    assert client.put(f"/api/deals/{deal.id}/stage", json={"stage_id": stages["qualified"].id}).status_code == 200

    after = client.get("/api/pipeline/analytics/overview").json()
    assert after["pipeline_stages"][0]["deal_count"] == 0
    assert after["pipeline_stages"][1]["deal_count"] == 1


def test_funnel_endpoint_validates_window(client: TestClient, stages: dict[str, PipelineStage], deal: Deal) -> None:
    response = client.get("/api/pipeline/analytics/funnel", params={"months": 3})
    assert response.status_code == 200
    assert response.json()["months"] == 3
    assert response.json()["total_months"] == 1

    assert client.get("/api/pipeline/analytics/funnel", params={"months": 0}).status_code == 400
    assert client.get("/api/pipeline/analytics/funnel", params={"months": 25}).status_code == 400


@pytest.mark.parametrize(
    ("subject", "expected"),
    [("42", 42), ("²", None), ("٣", None), ("auth0|abc", None), ("", None)],
)
def test_only_ascii_numeric_subjects_map_to_sales_users(subject: str, expected: int | None) -> None:
    assert AuthUser(sub=subject, roles=["user"]).numeric_id == expected
