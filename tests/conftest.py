from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session
from starlette.testclient import TestClient
from typer.testing import CliRunner

from stratus.config import HealthProbeSettings, Settings
from stratus.db import build_engine, init_db, session_factory_for
from stratus.models import SharedPoolMemberCreate
from stratus.provisioner import Orchestrator
from stratus.services.pool import SharedPoolAllocator
from stratus.services.registry import SqlInstanceRegistry
from tests.backend_fakes import FakeBackends


def counting_rng(length: int) -> bytes:
    return bytes(i % 256 for i in range(length))


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    # Threads need real connections of their own; an in-memory StaticPool shares one.
    engine = build_engine(f"sqlite:///{tmp_path / 'stratus-test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def session_factory(engine):
    return session_factory_for(engine)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        base_domain="stratus.test",
        default_app_version="1.0.0",
        dedicated_poll_interval=0.01,
        health=HealthProbeSettings(initial_delay=0.01, max_delay=0.02, budget=0.2),
    )


@pytest.fixture
def fakes() -> FakeBackends:
    return FakeBackends()


@pytest.fixture
def allocator(session_factory) -> SharedPoolAllocator:
    return SharedPoolAllocator(session_factory)


@pytest.fixture
def pool_member(allocator):
    return allocator.add_member(SharedPoolMemberCreate(id="pg-1", endpoint="pg-1.internal:5432", max_count=10))


@pytest.fixture
def orchestrator(fakes, allocator, session_factory, settings) -> Orchestrator:
    return Orchestrator(
        backends=fakes.as_backends(),
        allocator=allocator,
        registry=SqlInstanceRegistry(session_factory),
        settings=settings,
        rng=counting_rng,
    )


@pytest.fixture
def client(orchestrator):
    from stratus.main import app
    from stratus.provisioner import get_orchestrator

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture()
def cli_runner(orchestrator, monkeypatch):
    import stratus.cli as cli

    monkeypatch.setattr(cli, "get_orchestrator", lambda: orchestrator)
    return CliRunner(), cli.app
