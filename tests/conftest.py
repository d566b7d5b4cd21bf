import os

# Must be set before anything from kcs is imported
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["USE_LOCAL_STORAGE"] = "true"
os.environ["PROVIDER_MODE"] = "mock"
os.environ["OPERATOR_API_TOKEN"] = "operator-token"

import json
import time
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from kcs.api.deps import get_db, get_enqueue, get_storage
from kcs.core import stages
from kcs.core.config import Settings
from kcs.core.stages import PIPELINE
from kcs.db.base import Base
from kcs.main import app
from kcs.models import Partner
from kcs.services.intake import IntakeRequest, compute_signature, submit_order
from kcs.services.providers import build_registry
from kcs.services.storage import DeliveryService, StorageService
from kcs.tasks import assets, handoff, image_analysis, story
from kcs.tasks import print as print_stages
from kcs.tasks.base import execute_stage
from kcs.tasks.runtime import PipelineRuntime

engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    db_session = TestingSessionLocal()
    try:
        yield db_session
    finally:
        db_session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Small page geometry keeps the print stages fast."""
    return Settings(
        USE_LOCAL_STORAGE=True,
        LOCAL_STORAGE_PATH=str(tmp_path / "storage"),
        LOCAL_DELIVERY_PATH=str(tmp_path / "deliveries"),
        PROVIDER_MODE="mock",
        PROVIDER_RETRY_DELAY_SECONDS=0.0,
        PRINT_PAGE_PX=64,
        ICC_PROFILE_PATH=str(tmp_path / "icc" / "missing.icc"),
        INTERIOR_PAGE_CONCURRENCY=2,
    )


class RecordingEnqueue:
    """Stands in for the Celery producer and remembers what was enqueued."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    def __call__(self, stage, order_id):
        self.calls.append((stage, str(order_id)))

    @property
    def stages(self) -> list[str]:
        return [stage for stage, _ in self.calls]


@pytest.fixture
def enqueued() -> RecordingEnqueue:
    return RecordingEnqueue()


@pytest.fixture
def runtime(db: Session, test_settings: Settings, enqueued: RecordingEnqueue) -> PipelineRuntime:
    registry = build_registry(test_settings)
    registry.sleep = lambda seconds: None
    return PipelineRuntime(
        settings=test_settings,
        providers=registry,
        storage=StorageService(test_settings),
        delivery=DeliveryService(test_settings),
        session_factory=TestingSessionLocal,
        enqueue=enqueued,
    )


@pytest.fixture
def client(db: Session, runtime: PipelineRuntime, enqueued: RecordingEnqueue):
    """Create a test client with the test database."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_enqueue] = lambda: enqueued
    app.dependency_overrides[get_storage] = lambda: runtime.storage

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def partner(db: Session) -> Partner:
    partner = Partner(
        slug="acme-books",
        name="Acme Books",
        intake_secret="intake-secret",
        webhook_url="https://partner.example.com/hooks/kcs",
        webhook_secret="webhook-secret",
        delivery_folder="acme/deliveries",
    )
    db.add(partner)
    db.commit()
    db.refresh(partner)
    return partner


def order_payload(**overrides) -> dict:
    payload = {
        "partner_order_ref": "ACME-1001",
        "product_sku": "BOOK-HARDCOVER",
        "currency": "GBP",
        "allow_user_edit": False,
        "customer": {
            "first_name": "Sam",
            "last_name": "Taylor",
            "email": "sam@example.com",
        },
        "shipping": {
            "country": "GB",
            "address_line1": "1 High Street",
            "city": "Leeds",
            "postal_code": "LS1 1AA",
        },
        "brief": {
            "child": {"first_name": "Maya", "age": 5, "gender": "female", "photo_asset_id": "up-1"},
            "reading_level": "Early-KS1",
            "interests": ["foxes", "maps"],
            "core_theme": "kindness",
            "tone": "gentle",
            "objective": "celebrate curiosity",
            "characters": [{"name": "Nana", "relationship": "grandmother"}],
            "locations": [{"description": "the park by our house"}],
        },
        "uploads": [
            {
                "asset_id": "up-1",
                "filename": "maya.jpg",
                "content_type": "image/jpeg",
                "size_bytes": 123456,
                "url": "https://cdn.partner.example.com/uploads/maya.jpg",
                "usage": "character",
            }
        ],
        "consents": {"child_image_usage": True, "terms_version": "2024-01"},
    }
    payload.update(overrides)
    return payload


def signed_headers(partner: Partner, body: bytes, key: str | None = None, timestamp: int | None = None) -> dict:
    ts = str(int(time.time()) if timestamp is None else timestamp)
    return {
        "Authorization": f"Bearer {partner.slug}",
        "Idempotency-Key": key or str(uuid.uuid4()),
        "X-KCS-Timestamp": ts,
        "X-KCS-Signature": compute_signature(partner.intake_secret, ts, body),
        "Content-Type": "application/json",
    }


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def submit(db: Session, partner: Partner, test_settings: Settings, enqueued: RecordingEnqueue):
    """Submit an order through intake and return its id."""

    def _submit(payload: dict | None = None) -> uuid.UUID:
        body = encode(payload or order_payload())
        headers = signed_headers(partner, body)
        result = submit_order(
            db,
            IntakeRequest(
                authorization=headers["Authorization"],
                idempotency_key=headers["Idempotency-Key"],
                timestamp=headers["X-KCS-Timestamp"],
                signature=headers["X-KCS-Signature"],
                raw_body=body,
            ),
            test_settings,
            enqueued,
        )
        return uuid.UUID(result.order_id)

    return _submit


def stage_handlers() -> dict:
    return {
        stages.IMAGE_ANALYSIS: image_analysis.run_image_analysis,
        stages.STORY_ASSET_PLAN: story.run_asset_plan,
        stages.STORY_STYLE: story.run_style,
        stages.STORY_FOCUS: story.run_focus,
        stages.STORY_PROFILE: story.run_profile,
        stages.STORY_OUTLINE: story.run_outline,
        stages.STORY_DRAFT: story.run_draft,
        stages.STORY_REVISE: story.run_revise,
        stages.STORY_PROMPTS: story.run_prompts,
        stages.STORY_ASSETS: assets.run_assets,
        stages.STORY_ASSETS_REFINE: assets.run_assets_refine,
        stages.STORY_PACKAGING: story.run_packaging,
        stages.STORY_POLISH: story.run_polish,
        stages.STORY_COVER: print_stages.run_cover,
        stages.STORY_INTERIOR: print_stages.run_interior,
        stages.STORY_CMYK: print_stages.run_cmyk,
        stages.STORY_ASSEMBLY: print_stages.run_assembly,
        stages.STORY_HANDOFF: handoff.run_handoff,
    }


@pytest.fixture
def run_stages(runtime: PipelineRuntime):
    """Run pipeline stages in order, up to and including `last`."""
    handlers = stage_handlers()

    def _run(order_id, last: str, first: str | None = None) -> None:
        start = PIPELINE.index(first) if first else 0
        for stage in PIPELINE[start:PIPELINE.index(last) + 1]:
            execute_stage(stage, order_id, handlers[stage], runtime=runtime)

    return _run
