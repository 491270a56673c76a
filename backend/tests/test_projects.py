"""Tests for projects, progress updates, message threads and files."""

from datetime import datetime

import pytest
from sqlalchemy import select

from conftest import auth_headers
from portivo.models import ActivityLog, File, Project
from portivo.services.file_service import FileService
from portivo.services.notifications import NotificationKind, NotificationOutbox


@pytest.mark.asyncio
class TestProjectsAPI:
    async def test_create_list_and_filter(self, http, seed):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        await seed.project(client, name="Old site", status="completed")
        await seed.commit()
        headers = auth_headers(owner)

        created = await http.post(
            "/api/projects",
            json={"client_id": client.id, "name": "Brand refresh", "due_date": "2030-01-15T12:00:00+02:00"},
            headers=headers,
        )
        assert created.status_code == 201
        body = created.json()
        assert body["status"] == "active"
        assert datetime.fromisoformat(body["due_date"]) == datetime(2030, 1, 15, 10, 0)

        active = await http.get("/api/projects", params={"status": "active"}, headers=headers)
        assert [p["name"] for p in active.json()] == ["Brand refresh"]
        assert active.json()[0]["client_name"] == "Globex"

        bad = await http.get("/api/projects", params={"status": "sleeping"}, headers=headers)
        assert bad.status_code == 422

    async def test_status_change_is_logged_separately(self, http, seed, session_factory):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        project = await seed.project(client)
        await seed.commit()
        headers = auth_headers(owner)

        renamed = await http.patch(f"/api/projects/{project.id}", json={"name": "Renamed"}, headers=headers)
        assert renamed.status_code == 200
        held = await http.patch(f"/api/projects/{project.id}", json={"status": "on-hold"}, headers=headers)
        assert held.json()["status"] == "on-hold"
        # any status may move to any other
        back = await http.patch(f"/api/projects/{project.id}", json={"status": "not-started"}, headers=headers)
        assert back.json()["status"] == "not-started"

        async with session_factory() as session:
            rows = (
                await session.execute(select(ActivityLog).where(ActivityLog.project_id == project.id))
            ).scalars().all()
        actions = sorted(r.action for r in rows)
        assert actions == ["project.status_changed", "project.status_changed", "project.updated"]
        changed = [r.details for r in rows if r.action == "project.status_changed"]
        assert {"old_status": "active", "new_status": "on-hold"} in changed

    async def test_due_date_can_be_cleared(self, http, seed, session_factory):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        project = await seed.project(client, due_date=datetime(2030, 1, 1))
        await seed.commit()

        resp = await http.patch(f"/api/projects/{project.id}", json={"due_date": None}, headers=auth_headers(owner))
        assert resp.status_code == 200
        assert resp.json()["due_date"] is None

        untouched = await http.patch(f"/api/projects/{project.id}", json={"name": "Still"}, headers=auth_headers(owner))
        assert untouched.json()["due_date"] is None

        async with session_factory() as session:
            assert (await session.get(Project, project.id)).due_date is None

    async def test_member_cannot_delete_but_admin_can(self, http, seed):
        workspace, _ = await seed.workspace()
        _, member = await seed.member(workspace, "member@agency.test")
        _, admin = await seed.member(workspace, "admin@agency.test", role="admin")
        client, _ = await seed.client(workspace)
        project = await seed.project(client)
        await seed.commit()

        assert (await http.delete(f"/api/projects/{project.id}", headers=auth_headers(member))).status_code == 403
        assert (await http.delete(f"/api/projects/{project.id}", headers=auth_headers(admin))).status_code == 204

    async def test_updates_notify_client_contacts(self, http, seed, queue):
        workspace, owner = await seed.workspace()
        client, contact = await seed.client(workspace)
        project = await seed.project(client)
        await seed.commit()

        posted = await http.post(
            f"/api/projects/{project.id}/updates", json={"content": "Wireframes are done"}, headers=auth_headers(owner)
        )
        assert posted.status_code == 201
        mails = queue.of_kind(NotificationKind.PROJECT_UPDATE_POSTED)
        assert [m.recipient_email for m in mails] == ["contact@globex.test"]
        assert mails[0].template_data["update_content"] == "Wireframes are done"

        feed = await http.get(f"/api/projects/{project.id}/updates", headers=auth_headers(contact))
        assert [u["content"] for u in feed.json()] == ["Wireframes are done"]
        assert feed.json()[0]["author"]["email"] == "owner@agency.test"

        denied = await http.post(
            f"/api/projects/{project.id}/updates", json={"content": "Me too"}, headers=auth_headers(contact)
        )
        assert denied.status_code == 403


@pytest.mark.asyncio
class TestMessagesAPI:
    async def test_each_side_notifies_the_other(self, http, seed, queue):
        workspace, owner = await seed.workspace()
        _, member = await seed.member(workspace, "member@agency.test")
        client, contact = await seed.client(workspace)
        project = await seed.project(client)
        await seed.commit()

        from_client = await http.post(
            "/api/messages", json={"project_id": project.id, "content": "Can we move the call?"},
            headers=auth_headers(contact),
        )
        assert from_client.status_code == 201
        assert sorted(n.recipient_email for n in queue.of_kind(NotificationKind.MESSAGE_POSTED)) == [
            "member@agency.test",
            "owner@agency.test",
        ]

        queue.pushed.clear()
        from_agency = await http.post(
            "/api/messages", json={"project_id": project.id, "content": "Sure, Friday works"},
            headers=auth_headers(owner),
        )
        assert from_agency.status_code == 201
        notified = queue.of_kind(NotificationKind.MESSAGE_POSTED)
        assert [n.recipient_email for n in notified] == ["contact@globex.test"]
        assert notified[0].template_data["sender_name"] == "Olive Owner"

        thread = await http.get("/api/messages", params={"project_id": project.id}, headers=auth_headers(contact))
        assert [m["content"] for m in thread.json()] == ["Can we move the call?", "Sure, Friday works"]

    async def test_long_preview_is_truncated(self, http, seed, queue):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        project = await seed.project(client)
        await seed.commit()

        await http.post(
            "/api/messages", json={"project_id": project.id, "content": "x" * 300}, headers=auth_headers(owner)
        )
        preview = queue.of_kind(NotificationKind.MESSAGE_POSTED)[0].template_data["message_preview"]
        assert preview == "x" * 200 + "..."

    async def test_empty_and_oversized_messages(self, http, seed):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        project = await seed.project(client)
        await seed.commit()
        headers = auth_headers(owner)

        empty = await http.post("/api/messages", json={"project_id": project.id, "content": ""}, headers=headers)
        assert empty.status_code == 422
        blank = await http.post("/api/messages", json={"project_id": project.id, "content": "   "}, headers=headers)
        assert blank.status_code == 422
        assert blank.json()["errors"] == {"content": "Message cannot be empty"}
        huge = await http.post("/api/messages", json={"project_id": project.id, "content": "x" * 5001}, headers=headers)
        assert huge.status_code == 422


@pytest.mark.asyncio
class TestFilesAPI:
    async def test_upload_list_and_delete(self, http, seed, storage, session_factory):
        workspace, owner = await seed.workspace()
        client, contact = await seed.client(workspace)
        project = await seed.project(client)
        await seed.commit()

        uploaded = await http.post(
            "/api/files",
            data={"project_id": project.id},
            files={"file": ("Brief v2 (final).pdf", b"%PDF-1.4 brief", "application/pdf")},
            headers=auth_headers(owner),
        )
        assert uploaded.status_code == 201
        body = uploaded.json()
        assert body["name"] == "Brief v2 (final).pdf"
        assert body["size"] == len(b"%PDF-1.4 brief")
        assert body["content_type"] == "application/pdf"
        [key] = storage.blobs
        assert key.startswith(f"{workspace.id}/{project.id}/")
        assert body["url"] == f"https://files.test/{key}"

        listed = await http.get("/api/files", params={"project_id": project.id}, headers=auth_headers(contact))
        assert [f["id"] for f in listed.json()] == [body["id"]]

        denied = await http.delete(f"/api/files/{body['id']}", headers=auth_headers(contact))
        assert denied.status_code == 403

        deleted = await http.delete(f"/api/files/{body['id']}", headers=auth_headers(owner))
        assert deleted.status_code == 204
        assert storage.blobs == {}
        async with session_factory() as session:
            assert (await session.execute(select(File))).scalars().all() == []

    async def test_empty_file_is_rejected(self, http, seed, storage):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        project = await seed.project(client)
        await seed.commit()

        resp = await http.post(
            "/api/files",
            data={"project_id": project.id},
            files={"file": ("empty.txt", b"", "text/plain")},
            headers=auth_headers(owner),
        )
        assert resp.status_code == 422
        assert storage.blobs == {}


@pytest.mark.asyncio
class TestFileStorageFollowsTransaction:
    async def test_rolled_back_upload_is_removed_from_storage(self, db_session, seed, storage):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        project = await seed.project(client)
        outbox = NotificationOutbox()

        await FileService(db_session, storage=storage, outbox=outbox).upload_file(
            owner.id, project.id, "brief.pdf", "application/pdf", b"%PDF"
        )
        assert len(storage.blobs) == 1

        await db_session.rollback()
        await outbox.rollback()
        assert storage.blobs == {}

    async def test_delete_reaches_storage_only_after_commit(self, db_session, seed, storage, queue):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        project = await seed.project(client)
        upload_outbox = NotificationOutbox()
        record = await FileService(db_session, storage=storage, outbox=upload_outbox).upload_file(
            owner.id, project.id, "brief.pdf", "application/pdf", b"%PDF"
        )
        await seed.commit()
        await upload_outbox.flush(queue)

        outbox = NotificationOutbox()
        await FileService(db_session, storage=storage, outbox=outbox).delete_file(owner.id, record.id)
        assert record.key in storage.blobs

        await outbox.flush(queue)
        assert storage.blobs == {}

    async def test_failed_delete_keeps_the_stored_file(self, db_session, seed, storage, queue):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        project = await seed.project(client)
        record = await FileService(db_session, storage=storage, outbox=NotificationOutbox()).upload_file(
            owner.id, project.id, "brief.pdf", "application/pdf", b"%PDF"
        )
        await seed.commit()
        key = record.key

        outbox = NotificationOutbox()
        await FileService(db_session, storage=storage, outbox=outbox).delete_file(owner.id, record.id)
        await db_session.rollback()
        await outbox.rollback()

        assert key in storage.blobs
        assert (await db_session.execute(select(File))).scalars().one().key == key
