"""Shared test fixtures for backend tests.

Every test gets its own SQLite database file (aiosqlite, foreign keys on) and
in-memory doubles for the notification queue, blob storage and magic-link
store, so neither Postgres nor Redis is needed.
"""

import os

# Settings are read at import time; configure before importing portivo.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RESEND_API_KEY"] = ""
os.environ["ENVIRONMENT"] = "test"

from datetime import datetime, timedelta  # noqa: E402
from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event, pool, select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from portivo.api import deps  # noqa: E402
from portivo.auth.jwt import create_access_token  # noqa: E402
from portivo.database import Base, utcnow  # noqa: E402
from portivo.main import app  # noqa: E402
from portivo.models import (  # noqa: E402
    ApprovalRequest,
    Client,
    ClientContact,
    Invoice,
    InvoiceItem,
    Project,
    User,
    Workspace,
    WorkspaceMember,
)
from portivo.services.auth_service import MagicLinkStore  # noqa: E402
from portivo.services.money import LineItem, compute_totals  # noqa: E402
from portivo.services.notifications import Notification, NotificationKind, NotificationQueue  # noqa: E402
from portivo.services.storage import BlobStorage  # noqa: E402


# ── Test doubles ─────────────────────────────────────────────────────────────

class RecordingQueue(NotificationQueue):
    """Keeps pushed notifications in memory; `fail=True` makes every push raise."""

    def __init__(self, fail: bool = False):
        self.pushed: list[Notification] = []
        self.fail = fail

    async def push(self, notification: Notification) -> None:
        if self.fail:
            raise ConnectionError("queue unavailable")
        self.pushed.append(notification)

    def of_kind(self, kind: NotificationKind) -> list[Notification]:
        return [n for n in self.pushed if n.kind == kind]


class MemoryStorage(BlobStorage):
    def __init__(self):
        self.blobs: dict[str, bytes] = {}

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        self.blobs[key] = data
        return f"https://files.test/{key}"

    async def delete(self, key: str) -> None:
        self.blobs.pop(key, None)


class MemoryMagicLinkStore(MagicLinkStore):
    def __init__(self):
        self.tokens: dict[str, str] = {}

    async def save(self, token: str, user_id: str, ttl_seconds: int) -> None:
        self.tokens[token] = user_id

    async def consume(self, token: str) -> str | None:
        return self.tokens.pop(token, None)


# ── Database ─────────────────────────────────────────────────────────────────

def _install_sqlite_hooks(engine) -> None:
    """Foreign keys on, and explicit BEGIN so SAVEPOINT works under pysqlite."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}",
        poolclass=pool.NullPool,
    )
    _install_sqlite_hooks(test_engine)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def link_store() -> MemoryMagicLinkStore:
    return MemoryMagicLinkStore()


# ── Seed data ────────────────────────────────────────────────────────────────

class Seeder:
    """Inserts rows directly, bypassing services and their activity entries."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._invoice_seq = 0

    async def commit(self) -> None:
        await self.session.commit()

    async def user(self, email: str, name: str | None = None) -> User:
        result = await self.session.execute(select(User).where(User.email == email.lower()))
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing
        user = User(email=email.lower(), name=name)
        self.session.add(user)
        await self.session.flush()
        return user

    async def workspace(
        self,
        owner_email: str = "owner@agency.test",
        slug: str = "acme",
        name: str = "Acme Studio",
        plan: str = "trial",
    ) -> tuple[Workspace, User]:
        owner = await self.user(owner_email, "Olive Owner")
        workspace = Workspace(
            name=name,
            slug=slug,
            plan=plan,
            trial_ends_at=utcnow() + timedelta(days=14),
        )
        self.session.add(workspace)
        await self.session.flush()
        self.session.add(WorkspaceMember(workspace_id=workspace.id, user_id=owner.id, role="owner"))
        await self.session.flush()
        return workspace, owner

    async def member(self, workspace: Workspace, email: str, role: str = "member") -> tuple[WorkspaceMember, User]:
        user = await self.user(email)
        member = WorkspaceMember(workspace_id=workspace.id, user_id=user.id, role=role)
        self.session.add(member)
        await self.session.flush()
        return member, user

    async def client(
        self, workspace: Workspace, name: str = "Globex", contact_email: str = "contact@globex.test"
    ) -> tuple[Client, User]:
        client = Client(workspace_id=workspace.id, name=name)
        self.session.add(client)
        await self.session.flush()
        _, contact_user = await self.contact(client, contact_email, is_primary=True)
        return client, contact_user

    async def contact(self, client: Client, email: str, is_primary: bool = False) -> tuple[ClientContact, User]:
        user = await self.user(email)
        contact = ClientContact(client_id=client.id, user_id=user.id, is_primary=is_primary)
        self.session.add(contact)
        await self.session.flush()
        return contact, user

    async def project(
        self,
        client: Client,
        name: str = "Website Redesign",
        status: str = "active",
        due_date: datetime | None = None,
    ) -> Project:
        project = Project(client_id=client.id, name=name, status=status, due_date=due_date)
        self.session.add(project)
        await self.session.flush()
        return project

    async def approval(
        self, project: Project, requested_by: User, title: str = "Homepage mockup", status: str = "pending"
    ) -> ApprovalRequest:
        approval = ApprovalRequest(
            project_id=project.id, requested_by_id=requested_by.id, title=title, status=status
        )
        self.session.add(approval)
        await self.session.flush()
        return approval

    async def invoice(
        self,
        client: Client,
        items: list[tuple[str, int, int]] | None = None,
        *,
        status: str = "draft",
        number: str | None = None,
        tax: int = 0,
        currency: str = "USD",
        due_date: datetime | None = None,
        paid_at: datetime | None = None,
    ) -> Invoice:
        line_items = [LineItem(*i) for i in (items or [("Design work", 1, 50000)])]
        self._invoice_seq += 1
        totals = compute_totals(line_items, tax)
        invoice = Invoice(
            client_id=client.id,
            number=number or f"INV-TEST{self._invoice_seq:06d}",
            status=status,
            currency=currency,
            subtotal=totals.subtotal,
            tax=totals.tax,
            total=totals.total,
            due_date=due_date,
            paid_at=paid_at,
        )
        self.session.add(invoice)
        await self.session.flush()
        for position, item in enumerate(line_items):
            self.session.add(InvoiceItem(
                invoice_id=invoice.id,
                position=position,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total=item.total,
            ))
        await self.session.flush()
        return invoice


@pytest.fixture
def seed(db_session: AsyncSession) -> Seeder:
    return Seeder(db_session)


# ── HTTP client ──────────────────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    """Create an Authorization header with a valid JWT."""
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email)}"}


@pytest_asyncio.fixture
async def http(
    session_factory, queue, storage, link_store, monkeypatch
) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated client; pass ``headers=auth_headers(user)`` per request.

    Requests run through the real ``get_db`` (commit / rollback) bound to the
    test database. Seed data must be committed before the first request.
    """
    monkeypatch.setattr(deps, "async_session", session_factory)
    app.dependency_overrides[deps.get_queue] = lambda: queue
    app.dependency_overrides[deps.get_blob_storage] = lambda: storage
    app.dependency_overrides[deps.get_link_store] = lambda: link_store
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
