"""Tests for cross-entity search."""

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from conftest import auth_headers
from portivo.errors import ValidationFailedError
from portivo.models import File
from portivo.services.search_service import SearchService, empty_results, format_file_size


class TestFormatFileSize:
    @pytest.mark.parametrize(
        "size, expected",
        [(0, "0 B"), (512, "512 B"), (1536, "1.5 KB"), (5 * 1024 * 1024, "5 MB"), (3 * 1024 ** 4, "3072 GB")],
    )
    def test_labels(self, size, expected):
        assert format_file_size(size) == expected


@pytest.mark.asyncio
class TestSearchService:
    async def test_short_query_runs_no_sql(self, db_session, engine, seed):
        _, owner = await seed.workspace()
        await seed.commit()

        statements: list[str] = []

        def _count(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(engine.sync_engine, "before_cursor_execute", _count)
        try:
            results = await SearchService(db_session).search(owner.id, " a ")
        finally:
            event.remove(engine.sync_engine, "before_cursor_execute", _count)

        assert results == {"clients": [], "projects": [], "files": [], "invoices": [], "total": 0}
        assert statements == []

    async def test_unknown_type(self, db_session, seed):
        _, owner = await seed.workspace()
        with pytest.raises(ValidationFailedError) as exc:
            await SearchService(db_session).search(owner.id, "globex", "people")
        assert "type" in exc.value.errors

    async def test_matches_every_type(self, db_session, seed):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace, name="Globex Corporation")
        project = await seed.project(client, name="Globex relaunch")
        db_session.add(File(
            project_id=project.id, uploaded_by_id=owner.id, name="globex-logo.svg",
            key="k/globex-logo.svg", url="https://files.test/k/globex-logo.svg", size=2048,
            content_type="image/svg+xml",
        ))
        invoice = await seed.invoice(client, status="sent")
        await db_session.flush()

        results = await SearchService(db_session).search(owner.id, "GLOBEX")
        assert [r["title"] for r in results["clients"]] == ["Globex Corporation"]
        assert results["clients"][0]["subtitle"] == "contact@globex.test"
        assert results["clients"][0]["meta"] == "1 project"
        assert [r["title"] for r in results["projects"]] == ["Globex relaunch"]
        assert results["files"][0]["meta"] == "2 KB"
        assert results["files"][0]["description"] == "Uploaded by Olive Owner"
        # invoices match on the client's name too
        assert [r["id"] for r in results["invoices"]] == [invoice.id]
        assert results["invoices"][0]["description"] == "$500.00"
        assert results["total"] == 4

    async def test_type_filter(self, db_session, seed):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace, name="Globex")
        await seed.project(client, name="Globex site")

        results = await SearchService(db_session).search(owner.id, "globex", "projects")
        assert results["clients"] == []
        assert len(results["projects"]) == 1
        assert results["total"] == 1

    async def test_clients_match_contact_email(self, db_session, seed):
        workspace, owner = await seed.workspace()
        await seed.client(workspace, name="Umbrella", contact_email="alice@umbrella.test")

        results = await SearchService(db_session).search(owner.id, "alice@")
        assert [r["title"] for r in results["clients"]] == ["Umbrella"]

    async def test_wildcards_are_literal(self, db_session, seed):
        workspace, owner = await seed.workspace()
        await seed.client(workspace, name="Alpha")
        await seed.client(workspace, name="100% Pure", contact_email="pure@pure.test")

        results = await SearchService(db_session).search(owner.id, "%%", "clients")
        assert results == empty_results()
        results = await SearchService(db_session).search(owner.id, "0%", "clients")
        assert [r["title"] for r in results["clients"]] == ["100% Pure"]
        results = await SearchService(db_session).search(owner.id, "a_p", "clients")
        assert results["clients"] == []

    async def test_results_stay_in_the_callers_workspace(self, db_session, seed):
        workspace, owner = await seed.workspace()
        other, _ = await seed.workspace(owner_email="boss@other.test", slug="other", name="Other")
        await seed.client(workspace, name="Globex East")
        await seed.client(other, name="Globex West", contact_email="west@globex.test")

        results = await SearchService(db_session).search(owner.id, "globex")
        assert [r["title"] for r in results["clients"]] == ["Globex East"]

    @pytest.mark.parametrize(
        "failure",
        [OperationalError("SELECT", {}, Exception("disk I/O error")), KeyError("uploader")],
        ids=["database", "mapping"],
    )
    async def test_one_failing_type_does_not_sink_the_others(self, db_session, seed, monkeypatch, failure):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace, name="Globex Corporation")
        await seed.project(client, name="Globex relaunch")

        async def _broken(self, workspace_id, pattern, limit):
            raise failure

        monkeypatch.setattr(SearchService, "_files", _broken)
        before = REGISTRY.get_sample_value("search_failures_total", {"type": "files"}) or 0.0

        results = await SearchService(db_session).search(owner.id, "globex")
        assert results["files"] == []
        assert [r["title"] for r in results["clients"]] == ["Globex Corporation"]
        assert [r["title"] for r in results["projects"]] == ["Globex relaunch"]
        assert results["total"] == 2
        assert REGISTRY.get_sample_value("search_failures_total", {"type": "files"}) == before + 1


@pytest.mark.asyncio
class TestSearchAPI:
    async def test_contacts_cannot_search(self, http, seed):
        workspace, _ = await seed.workspace()
        _, contact = await seed.client(workspace)
        await seed.commit()

        resp = await http.get("/api/search", params={"q": "globex"}, headers=auth_headers(contact))
        assert resp.status_code == 404

    async def test_search_endpoint(self, http, seed):
        workspace, owner = await seed.workspace()
        await seed.client(workspace, name="Globex")
        await seed.commit()

        resp = await http.get("/api/search", params={"q": "glob", "type": "clients"}, headers=auth_headers(owner))
        assert resp.status_code == 200
        assert resp.json()["total"] == 1

        short = await http.get("/api/search", params={"q": "g"}, headers=auth_headers(owner))
        assert short.json()["total"] == 0

        bad = await http.get("/api/search", params={"q": "glob", "type": "people"}, headers=auth_headers(owner))
        assert bad.status_code == 422
