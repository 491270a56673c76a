"""Tests for the append-only activity log and its feed."""

from datetime import timedelta

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select, text

from conftest import auth_headers
from portivo.database import utcnow
from portivo.models import ActivityLog, Client
from portivo.services.activity_service import ActivityAction, ActivityService, EntityType
from portivo.services.client_service import ClientService


def _failures(action: str) -> float:
    return REGISTRY.get_sample_value("activity_log_failures_total", {"action": action}) or 0.0


class TestActivityAction:
    def test_codes_are_unique_and_typed(self):
        codes = [a.code for a in ActivityAction]
        assert len(codes) == len(set(codes))
        assert ActivityAction.from_code("invoice.paid") is ActivityAction.INVOICE_PAID
        assert ActivityAction.INVOICE_PAID.entity_type == EntityType.INVOICE

    def test_unknown_code(self):
        with pytest.raises(ValueError):
            ActivityAction.from_code("invoice.teleported")


@pytest.mark.asyncio
class TestActivityService:
    async def test_record_appends_entry(self, db_session, seed):
        workspace, owner = await seed.workspace()
        entry = await ActivityService(db_session).record(
            workspace.id, owner.id, ActivityAction.WORKSPACE_UPDATED, "x" * 600,
            entity_id=workspace.id, metadata={"fields": ["name"]},
        )
        assert entry is not None
        assert entry.entity_type == "workspace"
        assert len(entry.description) == 500
        assert entry.details == {"fields": ["name"]}

    async def test_failed_write_does_not_abort_the_operation(self, db_session, seed):
        workspace, owner = await seed.workspace()
        await db_session.execute(text("DROP TABLE activity_logs"))
        before = _failures("client.created")

        client = await ClientService(db_session).create_client(owner.id, "Hooli", "gavin@hooli.test")

        assert _failures("client.created") == before + 1
        count = (
            await db_session.execute(select(func.count()).select_from(Client).where(Client.id == client.id))
        ).scalar_one()
        assert count == 1

    async def test_feed_is_newest_first_with_details(self, db_session, seed):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        project = await seed.project(client)
        activity = ActivityService(db_session)
        first = await activity.record(
            workspace.id, owner.id, ActivityAction.PROJECT_CREATED, "first",
            entity_id=project.id, project_id=project.id, client_id=client.id,
        )
        first.created_at = utcnow() - timedelta(minutes=5)
        await db_session.flush()
        await activity.record(
            workspace.id, owner.id, ActivityAction.UPDATE_POSTED, "second",
            project_id=project.id, client_id=client.id,
        )

        feed = await activity.list_activity(owner.id, project_id=project.id)
        assert [e["description"] for e in feed] == ["second", "first"]
        assert feed[0]["user"]["email"] == "owner@agency.test"
        assert feed[0]["project"] == {"id": project.id, "name": "Website Redesign"}
        assert feed[0]["client"] == {"id": client.id, "name": "Globex"}

    async def test_limit_is_clamped(self, db_session, seed):
        workspace, owner = await seed.workspace()
        activity = ActivityService(db_session)
        for i in range(3):
            await activity.record(workspace.id, owner.id, ActivityAction.WORKSPACE_UPDATED, f"edit {i}")
        assert len(await activity.list_activity(owner.id, limit=2)) == 2
        assert len(await activity.list_activity(owner.id, limit=10_000)) == 3


@pytest.mark.asyncio
class TestActivityAPI:
    async def test_mutations_are_logged_and_scoped_to_the_workspace(self, http, seed, session_factory):
        workspace, owner = await seed.workspace()
        _, rival = await seed.workspace(owner_email="rival@other.test", slug="rival", name="Rival")
        await seed.commit()

        created = await http.post(
            "/api/clients",
            json={"name": "Hooli", "email": "gavin@hooli.com"},
            headers=auth_headers(owner),
        )
        assert created.status_code == 201

        feed = await http.get("/api/activity", headers=auth_headers(owner))
        assert feed.status_code == 200
        assert [e["action"] for e in feed.json()] == ["client.created"]
        assert feed.json()[0]["client"]["name"] == "Hooli"

        rival_feed = await http.get("/api/activity", headers=auth_headers(rival))
        assert rival_feed.json() == []
        peek = await http.get("/api/activity", params={"workspace_id": workspace.id}, headers=auth_headers(rival))
        assert peek.status_code == 404

        async with session_factory() as session:
            rows = (await session.execute(select(ActivityLog))).scalars().all()
            assert [(r.workspace_id, r.user_id) for r in rows] == [(workspace.id, owner.id)]

    async def test_contacts_cannot_read_the_project_feed(self, http, seed):
        workspace, _ = await seed.workspace()
        client, contact = await seed.client(workspace)
        project = await seed.project(client)
        await seed.commit()

        resp = await http.get("/api/activity", params={"project_id": project.id}, headers=auth_headers(contact))
        assert resp.status_code == 404

    async def test_limit_above_maximum_is_rejected(self, http, seed):
        _, owner = await seed.workspace()
        await seed.commit()
        resp = await http.get("/api/activity", params={"limit": 500}, headers=auth_headers(owner))
        assert resp.status_code == 422
        assert "limit" in resp.json()["errors"]
