"""
Pytest configuration for ATLAS tests.

This module provides:
1. Async test support without pytest-asyncio
2. Common fixtures (gateway, audit sink, services, actors)
3. Seed data helpers
"""

import asyncio
import functools
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Keep module-level app construction away from the working directory
os.environ.setdefault("ATLAS_DATA_DIR", tempfile.mkdtemp(prefix="atlas_test_"))
os.environ.setdefault("ATLAS_GATEWAY", "memory")

from atlas.audit import AuditSink
from atlas.captures import CaptureService
from atlas.certification import CertificateService
from atlas.forge_service import ForgeService
from atlas.gateway import (
    InMemoryGateway,
    CAPTURES_TABLE,
    CERTIFICATES_TABLE,
    FORGES_TABLE,
    MODELS_TABLE,
    LICENSES_TABLE,
)
from atlas.licensing import LicenseService
from atlas.model_registry import ModelRegistry
from atlas.models import Actor, Capture, CaptureStatus, Forge, ForgeState, License, Role


# -----------------------------------------------------------------------------
# Async Test Support
# -----------------------------------------------------------------------------
def async_test(func):
    """
    Decorator to run async tests without pytest-asyncio.

    Usage:
        @async_test
        async def test_something(self):
            result = await some_async_function()
            assert result is not None
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
MODEL_ID = "model-1"
MODEL_INTERNAL_ID = "042"
OTHER_MODEL_ID = "model-2"
BRAND_ID = "brand-1"
OTHER_BRAND_ID = "brand-2"

ADMIN = Actor(actor_id="admin-1", role=Role.ADMIN, name="Ada Admin")
MODEL = Actor(actor_id="user-model-1", role=Role.MODEL, linked_model_id=MODEL_ID)
BRAND = Actor(actor_id="user-brand-1", role=Role.BRAND, linked_brand_id=BRAND_ID)
OTHER_BRAND = Actor(actor_id="user-brand-2", role=Role.BRAND, linked_brand_id=OTHER_BRAND_ID)
VIEWER = Actor(actor_id="viewer-1", role=Role.VIEWER)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def make_forge(
    forge_id: str = "forge-1",
    model_id: str = MODEL_ID,
    state: ForgeState = ForgeState.CREATED,
    **kwargs,
) -> Forge:
    """Helper to create test forges."""
    now = datetime.now(timezone.utc)
    kwargs.setdefault("created_at", now)
    kwargs.setdefault("updated_at", now)
    return Forge(id=forge_id, model_id=model_id, state=state, **kwargs)


def make_license(
    license_id: str = "license-1",
    client_id: str = BRAND_ID,
    digital_twin_id: str = "DTW-2026-042-AB12",
    valid_from: datetime = datetime(2020, 1, 1, tzinfo=timezone.utc),
    valid_until: datetime = datetime(2099, 1, 1, tzinfo=timezone.utc),
    **kwargs,
) -> License:
    """Helper to create test licenses."""
    return License(
        id=license_id,
        model_id=kwargs.pop("model_id", MODEL_ID),
        digital_twin_id=digital_twin_id,
        client_id=client_id,
        valid_from=valid_from,
        valid_until=valid_until,
        **kwargs,
    )


def make_capture(
    capture_id: str = "capture-1",
    forge_id: str = "forge-1",
    status: CaptureStatus = CaptureStatus.PENDING,
    **kwargs,
) -> Capture:
    """Helper to create test captures."""
    kwargs.setdefault("uploaded_at", datetime.now(timezone.utc))
    return Capture(
        id=capture_id,
        forge_id=forge_id,
        model_id=kwargs.pop("model_id", MODEL_ID),
        angle=kwargs.pop("angle", "front"),
        file_name=kwargs.pop("file_name", f"{capture_id}.jpg"),
        status=status,
        **kwargs,
    )


def seed_rows(forges=(), licenses=(), captures=(), certificates=()):
    """Gateway seed with both models plus the given rows."""
    return {
        MODELS_TABLE: [
            {"id": MODEL_ID, "internal_id": MODEL_INTERNAL_ID, "full_name": "Mia Model", "city": "Lisbon"},
            {"id": OTHER_MODEL_ID, "internal_id": "", "full_name": "Other Model"},
        ],
        FORGES_TABLE: [f.to_dict() for f in forges],
        LICENSES_TABLE: [lic.to_dict() for lic in licenses],
        CAPTURES_TABLE: [c.to_dict() for c in captures],
        CERTIFICATES_TABLE: [c.to_dict() for c in certificates],
    }


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def audit_sink(tmp_path) -> AuditSink:
    """Audit sink writing to a temporary JSONL file."""
    return AuditSink(tmp_path / "audit_log.jsonl")


@pytest.fixture
def gateway() -> InMemoryGateway:
    """In-memory gateway holding the two test models."""
    return InMemoryGateway(seed=seed_rows())


@pytest.fixture
def forge_service(gateway, audit_sink) -> ForgeService:
    return ForgeService(gateway, audit_sink)


@pytest.fixture
def license_service(gateway, audit_sink) -> LicenseService:
    return LicenseService(gateway, audit_sink)


@pytest.fixture
def model_registry(gateway, audit_sink) -> ModelRegistry:
    return ModelRegistry(gateway, audit_sink)


@pytest.fixture
def capture_service(gateway, audit_sink) -> CaptureService:
    return CaptureService(gateway, audit_sink)


@pytest.fixture
def certificate_service(gateway, audit_sink) -> CertificateService:
    return CertificateService(gateway, audit_sink)


# -----------------------------------------------------------------------------
# Session Configuration
# -----------------------------------------------------------------------------
def pytest_configure(config):
    """Configure pytest session."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async (custom implementation)"
    )
