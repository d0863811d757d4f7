"""Shared test configuration."""

from __future__ import annotations

import os

os.environ["ENVIRONMENT"] = "testing"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from datetime import date, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from sprintboard.core.auth import create_access_token
from sprintboard.database import get_db
from sprintboard.main import app
from sprintboard.models import Base, ProjectRole, User
from sprintboard.services.backlog_service import BacklogService
from sprintboard.services.project_service import ProjectService
from sprintboard.services.sprint_service import SprintService


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def users(db):
    """po, sm, dev, dev2 are project members; outsider is not."""
    people = {
        "po": User(email="carol.po@example.com", full_name="Carol PO"),
        "sm": User(email="alice.sm@example.com", full_name="Alice SM"),
        "dev": User(email="emma.dev@example.com", full_name="Emma Dev"),
        "dev2": User(email="frank.dev@example.com", full_name="Frank Dev"),
        "outsider": User(email="olly.out@example.com", full_name="Olly Outsider"),
    }
    db.add_all(people.values())
    await db.commit()
    return people


@pytest_asyncio.fixture
async def project(db, users):
    service = ProjectService(db)
    project = await service.create_project("Web Shop", owner_id=users["po"].id)
    await service.add_member(project.id, users["sm"].id, ProjectRole.SCRUM_MASTER)
    await service.add_member(project.id, users["dev"].id, ProjectRole.DEVELOPER)
    await service.add_member(project.id, users["dev2"].id, ProjectRole.DEVELOPER)
    return project


@pytest.fixture
def make_item(db, project, users):
    """Factory: create an item in the project's backlog (or a sprint's TODO)."""

    async def _make(title: str = "Backlog item title", **fields):
        return await BacklogService(db).create_item(
            project_id=fields.pop("project_id", project.id),
            title=title,
            creator_id=fields.pop("creator_id", users["po"].id),
            **fields
        )

    return _make


@pytest.fixture
def make_sprint(db, project):
    """Factory: create a PLANNING sprint, optionally activating it."""

    counter = {"n": 0}

    async def _make(name: str = None, planned_velocity: int = 20, activate: bool = False, **fields):
        counter["n"] += 1
        service = SprintService(db)
        start = fields.pop("start_date", date(2026, 1, 5) + timedelta(days=14 * counter["n"]))
        sprint = await service.create_sprint(
            project_id=fields.pop("project_id", project.id),
            name=name or f"Sprint {counter['n']}",
            start_date=start,
            end_date=fields.pop("end_date", start + timedelta(days=13)),
            planned_velocity=planned_velocity,
            **fields
        )
        if activate:
            await service.activate(sprint.id)
        return sprint

    return _make


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def auth(users):
    """Bearer headers for one of the `users` fixtures, by key."""

    def _headers(key: str):
        token = create_access_token({"sub": users[key].id})
        return {"Authorization": f"Bearer {token}"}

    return _headers
