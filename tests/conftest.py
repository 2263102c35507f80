from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session, sessionmaker

from invoice_intake.core.config import get_settings
from invoice_intake.db.repository import InvoiceRepository
from invoice_intake.db.session import create_db_engine, init_db, make_session_factory
from invoice_intake.main import app
from invoice_intake.services.blob_store import LocalBlobStore
from invoice_intake.services.invoices import InvoiceService
from invoice_intake.services.llm_extractor import LLMExtractor
from invoice_intake.services.orchestrator import ExtractionOrchestrator
from invoice_intake.services.text_extractor import (
    BinaryScanExtractor,
    PlumberLayoutExtractor,
    TextExtractor,
)
from tests.utils import StubProvider


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory: sessionmaker[Session]) -> InvoiceRepository:
    return InvoiceRepository(session_factory)


@pytest.fixture
def blob_store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def gemini() -> StubProvider:
    return StubProvider("gemini")


@pytest.fixture
def groq() -> StubProvider:
    return StubProvider("groq")


@pytest.fixture
def orchestrator(gemini: StubProvider, groq: StubProvider) -> ExtractionOrchestrator:
    return ExtractionOrchestrator(LLMExtractor({"gemini": gemini, "groq": groq}))


@pytest.fixture
def text_extractor() -> TextExtractor:
    return TextExtractor([PlumberLayoutExtractor(), BinaryScanExtractor()])


@pytest.fixture
def service(
    repository: InvoiceRepository,
    blob_store: LocalBlobStore,
    text_extractor: TextExtractor,
    orchestrator: ExtractionOrchestrator,
) -> InvoiceService:
    return InvoiceService(
        repository=repository,
        blobs=blob_store,
        text_extractor=text_extractor,
        orchestrator=orchestrator,
    )


@pytest.fixture
async def client(service: InvoiceService) -> AsyncGenerator[AsyncClient, None]:
    app.state.invoice_service = service
    app.state.configured_providers = ["gemini", "groq"]
    app.state.ready = True
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.state.ready = False
