"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files: pytest discovers this by convention.
"""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from booking_engine.deps import (
    can_advance_bookings,
    can_manage_booking,
    can_read_booking,
    can_read_or_manage_booking,
    can_write_booking,
    get_booking_repository,
    get_current_user,
    get_engine,
)
from booking_engine.routers.booking import router

from .factories import Harness, make_admin, make_guest, make_harness, make_host

# ---------------------------------------------------------------------------
# App builder: used by all client fixtures
# ---------------------------------------------------------------------------


def build_app(current_user, harness: Harness) -> FastAPI:
    """
    Fresh FastAPI app with auth/scope dependencies overridden to return
    `current_user` unconditionally, and the engine wired to in-memory fakes.
    """
    app = FastAPI()
    app.include_router(router)

    async def _user():
        return current_user

    for dep in (
        can_read_booking,
        can_write_booking,
        can_manage_booking,
        can_read_or_manage_booking,
        can_advance_bookings,
        get_current_user,
    ):
        app.dependency_overrides[dep] = _user

    app.dependency_overrides[get_engine] = lambda: harness.engine
    app.dependency_overrides[get_booking_repository] = lambda: harness.bookings
    return app


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def harness() -> Harness:
    return make_harness()


@pytest.fixture()
def guest_client(harness):
    return TestClient(build_app(make_guest(), harness), raise_server_exceptions=True)


@pytest.fixture()
def host_client(harness):
    return TestClient(build_app(make_host(), harness), raise_server_exceptions=True)


@pytest.fixture()
def admin_client(harness):
    return TestClient(build_app(make_admin(), harness), raise_server_exceptions=True)


@pytest.fixture()
def anon_app(harness):
    """
    App with only the engine overridden.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_engine] = lambda: harness.engine
    app.dependency_overrides[get_booking_repository] = lambda: harness.bookings
    return app


@pytest.fixture()
def client_factory(harness):
    def _make(current_user) -> TestClient:
        return TestClient(build_app(current_user, harness), raise_server_exceptions=True)

    return _make
