"""Tests for the workspace reports."""

from datetime import date, datetime

import pytest

from conftest import auth_headers
from portivo.errors import ValidationFailedError
from portivo.models import Message, ProjectUpdate
from portivo.services.report_service import ReportPeriod, ReportService, ReportType

NOW = datetime(2026, 3, 15, 12, 0)


def _created(obj, when: datetime):
    obj.created_at = when
    return obj


class TestReportPeriod:
    def test_end_day_is_inclusive(self):
        period = ReportPeriod(start=date(2026, 3, 1), end=date(2026, 3, 5))
        start, end = period.filters(ProjectUpdate.created_at)
        assert start.right.value == datetime(2026, 3, 1)
        assert end.right.value == datetime(2026, 3, 6)

    def test_open_period_has_no_filters(self):
        assert ReportPeriod().filters(ProjectUpdate.created_at) == []

    def test_end_before_start_is_rejected(self):
        with pytest.raises(ValidationFailedError) as exc:
            ReportPeriod(start=date(2026, 3, 5), end=date(2026, 3, 1))
        assert exc.value.errors == {"end_date": "End date is before start date"}


@pytest.mark.asyncio
class TestReportService:
    async def test_summary(self, db_session, seed):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        await seed.project(client)
        await seed.project(client, name="Brand book", status="completed")
        await seed.invoice(client, [("Build", 1, 50000)], status="paid", paid_at=datetime(2026, 3, 2))
        await seed.invoice(client, [("Audit", 1, 30000)], status="paid", paid_at=datetime(2026, 2, 2))
        await seed.invoice(client, [("Phase 2", 1, 20000)], status="sent")
        await seed.invoice(client, status="draft")
        await seed.invoice(client, status="cancelled")

        report = await ReportService(db_session).generate(owner.id, ReportType.SUMMARY, ReportPeriod(), now=NOW)
        assert report["type"] == "summary"
        assert report["workspace"] == "Acme Studio"
        assert report["period"] == {"start": None, "end": None}
        assert report["data"]["overview"] == {
            "total_clients": 1,
            "total_projects": 2,
            "active_projects": 1,
            "completed_projects": 1,
            "total_invoices": 5,
            "paid_invoices": 2,
        }
        assert report["data"]["financial"] == {
            "total_revenue": {"USD": 80000},
            "outstanding": {"USD": 20000},
            "average_paid_invoice": {"USD": 40000},
        }

    async def test_period_filters_on_creation_date(self, db_session, seed):
        workspace, owner = await seed.workspace()
        old, _ = await seed.client(workspace, name="Old Co", contact_email="a@old.test")
        new, _ = await seed.client(workspace, name="New Co", contact_email="b@new.test")
        _created(old, datetime(2026, 1, 10))
        _created(new, datetime(2026, 3, 5, 18, 30))
        await db_session.flush()

        service = ReportService(db_session)
        march = ReportPeriod(start=date(2026, 3, 1), end=date(2026, 3, 5))
        report = await service.generate(owner.id, ReportType.CLIENTS, march, now=NOW)
        assert [c["name"] for c in report["data"]["clients"]] == ["New Co"]

        since_january = ReportPeriod(start=date(2026, 1, 1))
        report = await service.generate(owner.id, ReportType.CLIENTS, since_january, now=NOW)
        assert report["data"]["totals"]["total_clients"] == 2

        until_february = ReportPeriod(end=date(2026, 2, 28))
        report = await service.generate(owner.id, ReportType.CLIENTS, until_february, now=NOW)
        assert [c["name"] for c in report["data"]["clients"]] == ["Old Co"]

    async def test_revenue_by_client(self, db_session, seed):
        workspace, owner = await seed.workspace()
        globex, _ = await seed.client(workspace)
        initech, _ = await seed.client(workspace, name="Initech", contact_email="bill@initech.test")
        _created(
            await seed.invoice(globex, [("Build", 1, 50000)], status="paid", paid_at=datetime(2026, 3, 2)),
            datetime(2026, 2, 20),
        )
        _created(
            await seed.invoice(globex, [("Late", 1, 7000)], status="sent", due_date=datetime(2026, 3, 1)),
            datetime(2026, 2, 25),
        )
        _created(
            await seed.invoice(initech, [("Retainer", 1, 20000)], status="paid", currency="EUR",
                               paid_at=datetime(2026, 3, 10)),
            datetime(2026, 3, 1),
        )
        await seed.invoice(initech, status="draft")
        await seed.invoice(initech, status="cancelled")
        await db_session.flush()

        report = await ReportService(db_session).generate(owner.id, ReportType.REVENUE, ReportPeriod(), now=NOW)
        data = report["data"]
        assert [(i["client"], i["status"], i["amount"]) for i in data["invoices"]] == [
            ("Initech", "paid", 20000),
            ("Globex", "overdue", 7000),
            ("Globex", "paid", 50000),
        ]
        assert data["by_client"] == [
            {
                "client_id": globex.id,
                "client": "Globex",
                "count": 2,
                "total": {"USD": 57000},
                "paid": {"USD": 50000},
                "pending": {"USD": 7000},
            },
            {
                "client_id": initech.id,
                "client": "Initech",
                "count": 1,
                "total": {"EUR": 20000},
                "paid": {"EUR": 20000},
                "pending": {},
            },
        ]
        assert data["totals"] == {
            "total": {"USD": 57000, "EUR": 20000},
            "paid": {"USD": 50000, "EUR": 20000},
            "pending": {"USD": 7000},
        }

    async def test_projects_report_counts_content(self, db_session, seed):
        workspace, owner = await seed.workspace()
        client, contact = await seed.client(workspace)
        project = await seed.project(client)
        await seed.project(client, name="Paused", status="on-hold")
        await seed.approval(project, owner)
        db_session.add(ProjectUpdate(project_id=project.id, author_id=owner.id, content="Kickoff done"))
        db_session.add(Message(project_id=project.id, author_id=contact.id, content="Thanks!"))
        db_session.add(Message(project_id=project.id, author_id=owner.id, content="Anytime"))
        await db_session.flush()

        report = await ReportService(db_session).generate(owner.id, ReportType.PROJECTS, ReportPeriod(), now=NOW)
        data = report["data"]
        entry = next(p for p in data["projects"] if p["id"] == project.id)
        assert entry["client"] == "Globex"
        assert (entry["updates"], entry["files"], entry["approvals"], entry["messages"]) == (1, 0, 1, 2)
        assert data["by_status"]["active"] == 1
        assert data["by_status"]["on-hold"] == 1
        assert data["totals"] == {"total": 2, "active": 1, "completed": 0, "on_hold": 1}

    async def test_clients_report(self, db_session, seed):
        workspace, owner = await seed.workspace()
        client, _ = await seed.client(workspace)
        await seed.contact(client, "second@globex.test")
        await seed.project(client)
        await seed.project(client, name="Done", status="completed")
        await seed.invoice(client, [("Build", 1, 50000)], status="paid", paid_at=datetime(2026, 3, 2))
        await seed.invoice(client, [("Phase 2", 1, 12000)], status="sent")

        report = await ReportService(db_session).generate(owner.id, ReportType.CLIENTS, ReportPeriod(), now=NOW)
        [entry] = report["data"]["clients"]
        assert entry["primary_contact"] == "contact@globex.test"
        assert entry["total_projects"] == 2
        assert entry["active_projects"] == 1
        assert entry["total_revenue"] == {"USD": 50000}
        assert entry["outstanding"] == {"USD": 12000}
        assert report["data"]["totals"] == {
            "total_clients": 1,
            "total_projects": 2,
            "total_revenue": {"USD": 50000},
        }

    async def test_other_workspaces_are_not_reported(self, db_session, seed):
        _, owner = await seed.workspace()
        other, _ = await seed.workspace(owner_email="boss@other.test", slug="other", name="Other")
        rival, _ = await seed.client(other, name="Rival Co", contact_email="r@rival.test")
        await seed.invoice(rival, status="paid", paid_at=datetime(2026, 3, 2))

        report = await ReportService(db_session).generate(owner.id, ReportType.SUMMARY, ReportPeriod(), now=NOW)
        assert report["data"]["overview"]["total_clients"] == 0
        assert report["data"]["financial"]["total_revenue"] == {}


@pytest.mark.asyncio
class TestReportsAPI:
    async def test_report_endpoint(self, http, seed):
        workspace, owner = await seed.workspace()
        client, contact = await seed.client(workspace)
        await seed.invoice(client, status="paid", paid_at=datetime(2026, 3, 2))
        await seed.commit()

        resp = await http.get(
            "/api/reports",
            params={"type": "revenue", "start_date": "2020-01-01"},
            headers=auth_headers(owner),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["type"] == "revenue"
        assert body["period"] == {"start": "2020-01-01", "end": None}
        assert body["data"]["totals"]["paid"] == {"USD": 50000}

        summary = await http.get("/api/reports", headers=auth_headers(owner))
        assert summary.json()["type"] == "summary"

        denied = await http.get("/api/reports", headers=auth_headers(contact))
        assert denied.status_code == 404

    async def test_bad_parameters_are_validation_failed(self, http, seed):
        _, owner = await seed.workspace()
        await seed.commit()
        headers = auth_headers(owner)

        bad_type = await http.get("/api/reports", params={"type": "forecast"}, headers=headers)
        assert bad_type.status_code == 422
        assert "type" in bad_type.json()["errors"]

        backwards = await http.get(
            "/api/reports", params={"start_date": "2026-03-05", "end_date": "2026-03-01"}, headers=headers
        )
        assert backwards.status_code == 422
        assert backwards.json()["errors"] == {"end_date": "End date is before start date"}
