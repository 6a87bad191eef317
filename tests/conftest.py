"""
Enrichment Pipeline Test Suite — Shared Fixtures.

Provides:
- In-memory SQLite DB with every pipeline table
- A fresh single-consumer dispatch queue per test
- Mocked external services (AI, website scraper, Telegram)
- Factories for reports / prospects / contacts / jobs

Usage:
    python -m pytest tests/ -v
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from prospect_api.config import settings
from prospect_api.database import Base, get_db
from prospect_api.main import app
from prospect_api.models.enrichment_job import EnrichmentJob, EnrichmentJobItem
from prospect_api.models.prospect import Contact, ProspectActivity, Report
from prospect_api.services import batch_orchestrator
from prospect_api.services.queue import EnrichmentQueue

# ═══════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


def utc(minutes_ago: float = 0) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)


# ═══════════════════════════════════════════════════════════
# DATABASE FIXTURES
# ═══════════════════════════════════════════════════════════

@pytest_asyncio.fixture()
async def pipeline_engine():
    """In-memory SQLite engine with all pipeline tables."""
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(pipeline_engine):
    """Session factory for patching into service modules."""
    return async_sessionmaker(pipeline_engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db(session_factory):
    """Async DB session for test setup."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def verify_db(session_factory):
    """Return a callable that gives a fresh async session context manager.

    Service functions use their own sessions, so the test 'db' session's
    identity-map is stale.  Open a brand-new session to read committed data.

    Usage:
        async with verify_db() as vdb:
            fresh = await vdb.get(ProspectActivity, some_id)
    """
    def _open():
        return session_factory()
    return _open


# ═══════════════════════════════════════════════════════════
# PATCH ALL SERVICE MODULES TO USE TEST DB
# ═══════════════════════════════════════════════════════════

SERVICE_MODULES = [
    "prospect_api.database",
    "prospect_api.services.lock_manager",
    "prospect_api.services.enrichment_worker",
    "prospect_api.services.batch_orchestrator",
    "prospect_api.services.reconciliation",
    "prospect_api.services.stats",
]


@pytest.fixture(autouse=True)
def patch_db_factory(session_factory):
    """Redirect async_session_factory in ALL pipeline modules to test DB."""
    patchers = []
    for mod in SERVICE_MODULES:
        p = patch(f"{mod}.async_session_factory", session_factory)
        p.start()
        patchers.append(p)
    yield session_factory
    for p in patchers:
        p.stop()


@pytest.fixture(autouse=True)
def fresh_queue():
    """One consumer at a time: every worker session runs on the shared SQLite connection."""
    queue = EnrichmentQueue(max_concurrent=1)
    queue.set_processor(batch_orchestrator.process_task)
    queue.set_discard_handler(batch_orchestrator.discard_task)
    with patch("prospect_api.services.batch_orchestrator.enrichment_queue", queue), \
         patch("prospect_api.services.reconciliation.enrichment_queue", queue), \
         patch("prospect_api.services.stats.enrichment_queue", queue), \
         patch("prospect_api.routes.enrichment_queue", queue):
        yield queue


@pytest.fixture(autouse=True)
def clear_rate_limit():
    batch_orchestrator.reset_rate_limit()
    yield
    batch_orchestrator.reset_rate_limit()


@pytest.fixture(autouse=True)
def ai_credentials(monkeypatch):
    """Pretend the AI provider is configured; tests that need it missing unset it."""
    monkeypatch.setattr(settings, "ai_provider", "github-models")
    monkeypatch.setattr(settings, "ai_token", "test-token")


# ═══════════════════════════════════════════════════════════
# MOCK EXTERNAL SERVICES
# ═══════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def mock_alerts():
    """Mock ALL Telegram alerts to no-op."""
    with patch("prospect_api.services.batch_orchestrator.send_alert",
               new_callable=AsyncMock, return_value=True) as m, \
         patch("prospect_api.services.reconciliation.send_alert",
               new_callable=AsyncMock, return_value=True):
        yield m


SAMPLE_SCRAPE = {
    "pages": {
        "https://acmeplumbing.com": "Acme Plumbing — family owned since 1998. "
                                    "Call Jane Doe, owner, at jane@acmeplumbing.com.",
        "https://acmeplumbing.com/contact": "Contact us: info@acmeplumbing.com",
    },
    "emails": ["jane@acmeplumbing.com", "info@acmeplumbing.com"],
}

SAMPLE_EXTRACTION = {
    "company_name": "Acme Plumbing",
    "contacts": [
        {"name": "Jane Doe", "title": "Owner", "email": "jane@acmeplumbing.com",
         "phone": None, "is_primary": True},
        {"name": None, "title": None, "email": "info@acmeplumbing.com",
         "phone": None, "is_primary": False},
    ],
}

SAMPLE_ICEBREAKER = "Saw that Acme has kept Austin's pipes flowing since 1998."


@pytest.fixture()
def mock_scrape():
    """Website scraper → SAMPLE_SCRAPE."""
    with patch("prospect_api.services.enrichment_worker.scrape_website",
               new_callable=AsyncMock, return_value=SAMPLE_SCRAPE) as m:
        yield m


@pytest.fixture()
def mock_extract():
    """AI contact extraction → SAMPLE_EXTRACTION."""
    with patch("prospect_api.services.enrichment_worker.extract_contacts",
               new_callable=AsyncMock, return_value=SAMPLE_EXTRACTION) as m:
        yield m


@pytest.fixture()
def mock_icebreaker():
    with patch("prospect_api.services.enrichment_worker.generate_icebreaker",
               new_callable=AsyncMock, return_value=SAMPLE_ICEBREAKER) as m:
        yield m


@pytest.fixture()
def mock_worker_ai(mock_scrape, mock_extract, mock_icebreaker):
    """Everything the worker talks to over the network."""
    return {"scrape": mock_scrape, "extract": mock_extract, "icebreaker": mock_icebreaker}


# ═══════════════════════════════════════════════════════════
# ENTITY FACTORIES (create records in test DB)
# ═══════════════════════════════════════════════════════════

@pytest.fixture()
def make_prospect(db):
    """Factory: ``await make_prospect(domain=..., status=..., emails=[...])``."""

    async def _make(
        domain: str = "acmeplumbing.com",
        status: str = "new",
        company_name: str | None = "Acme Plumbing",
        emails: list[str] | None = None,
        icebreaker: str | None = None,
        retry_count: int = 0,
        contact_count: int = 0,
        locked_by: str | None = None,
        locked_minutes_ago: float | None = None,
        updated_minutes_ago: float = 0,
    ) -> ProspectActivity:
        report = Report(domain=domain, company_name=company_name)
        contacts = [
            Contact(name=f"Contact {i}", email=email, is_primary=(i == 0))
            for i, email in enumerate(emails or [])
        ]
        prospect = ProspectActivity(
            report=report,
            contacts=contacts,
            status=status,
            icebreaker_text=icebreaker,
            enrichment_retry_count=retry_count,
            contact_count=contact_count,
            enrichment_locked_by=locked_by,
            enrichment_locked_at=(
                utc(locked_minutes_ago) if locked_minutes_ago is not None
                else (utc() if locked_by else None)
            ),
            updated_at=utc(updated_minutes_ago),
        )
        db.add_all([report, prospect])
        await db.commit()
        return prospect

    return _make


@pytest.fixture()
def make_job(db):
    """Factory: a running job whose items point at the given prospects.

    ``item_statuses`` lines up with ``prospects``; every prospect whose item
    is in flight is locked by the job's worker.
    """

    async def _make(
        prospects: list[ProspectActivity],
        item_statuses: list[str] | None = None,
        status: str = "running",
        updated_minutes_ago: float = 0,
    ) -> EnrichmentJob:
        job = EnrichmentJob(job_type="manual", status=status, worker_id="")
        db.add(job)
        await db.flush()
        job.worker_id = f"manual-batch:{job.id}"

        statuses = item_statuses or ["pending"] * len(prospects)
        for prospect, item_status in zip(prospects, statuses):
            db.add(EnrichmentJobItem(
                job_id=job.id,
                prospect_id=prospect.id,
                domain=prospect.domain,
                status=item_status,
                has_emails=item_status == "success",
                contacts_found=1 if item_status == "success" else 0,
            ))
            if item_status in ("pending", "processing"):
                prospect.enrichment_locked_by = job.worker_id
                prospect.enrichment_locked_at = utc()
        job.total_count = len(prospects)
        job.updated_at = utc(updated_minutes_ago)
        await db.commit()
        return job

    return _make


# ═══════════════════════════════════════════════════════════
# HTTP CLIENT
# ═══════════════════════════════════════════════════════════

@pytest_asyncio.fixture()
async def client(session_factory):
    """FastAPI test client with test DB injected."""

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
