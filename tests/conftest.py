"""
Pytest fixtures for WhatSend tests.

Every test gets its own in-memory SQLite database; FOR UPDATE clauses are
dropped by the SQLite dialect.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from whatsend.credentials import CredentialCodec, CredentialStore
from whatsend.persistence.models import WhatSendBase
from whatsend.providers.stub import StubWhatsAppCapability
from whatsend.session import SessionManager, SessionRegistry, StatusProjector


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    WhatSendBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def sample_tenant_id():
    """Sample tenant (shop domain)."""
    return "shop-a.myshopify.com"


@pytest.fixture
def sample_phone():
    """Sample phone number."""
    return "+5511999999999"


@pytest.fixture
def credential_store(session_factory):
    return CredentialStore(session_factory, CredentialCodec())


@pytest.fixture
def projector(session_factory):
    return StatusProjector(session_factory)


@pytest.fixture
def capability():
    return StubWhatsAppCapability()


@pytest.fixture
async def sessions(capability, credential_store, projector):
    manager = SessionManager(
        capability,
        credential_store,
        projector,
        registry=SessionRegistry(),
        reconnect_delay=0.05,
        ready_timeout=1.0,
    )
    yield manager
    await manager.shutdown()
