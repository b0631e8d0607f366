"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files: pytest discovers this by convention.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.deps import (
    can_pay_booking,
    can_read_earnings,
    can_read_or_manage_booking,
    can_read_refunds,
    can_refund_booking,
    can_write_booking,
    get_current_user,
    get_payments_client,
    get_services_client,
)
from app.exceptions import register_exception_handlers
from app.routers import booking, earnings

from .factories import make_admin, make_customer, make_provider

# ---------------------------------------------------------------------------
# Default no-op client mocks: prevent real HTTP calls in tests
# ---------------------------------------------------------------------------


def _noop_services_client():
    mock = MagicMock()
    mock.get_service = AsyncMock(return_value=None)
    return mock


def _noop_payments_client():
    mock = MagicMock()
    mock.create_payment_intent = AsyncMock(
        return_value={"id": "pi_test", "client_secret": "pi_test_secret"}
    )
    mock.refund_booking = AsyncMock(return_value=True)
    return mock


# ---------------------------------------------------------------------------
# App builder: used by all client fixtures
# ---------------------------------------------------------------------------


def _bare_app() -> FastAPI:
    app = FastAPI()
    app.include_router(booking.router)
    app.include_router(earnings.router)
    register_exception_handlers(app)
    return app


def build_app(current_user, services_client=None, payments_client=None) -> FastAPI:
    """
    Fresh FastAPI app with auth/scope dependencies overridden to return
    `current_user` unconditionally.

    Pass `services_client` / `payments_client` to inject custom mocks.
    Defaults to no-op mocks, avoiding real HTTP calls.
    """
    app = _bare_app()

    async def _user():
        return current_user

    for dep in (
        can_read_or_manage_booking,
        can_write_booking,
        can_pay_booking,
        can_refund_booking,
        can_read_refunds,
        can_read_earnings,
        get_current_user,
    ):
        app.dependency_overrides[dep] = _user

    sc = services_client if services_client is not None else _noop_services_client()
    pc = payments_client if payments_client is not None else _noop_payments_client()
    app.dependency_overrides[get_services_client] = lambda: sc
    app.dependency_overrides[get_payments_client] = lambda: pc

    return app


# ---------------------------------------------------------------------------
# Redis is never touched in tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def earnings_cache():
    with (
        patch("app.routers.booking.invalidate_earnings_cache", new=AsyncMock()) as inv,
        patch(
            "app.routers.earnings.get_earnings_cache", new=AsyncMock(return_value=None)
        ) as get,
        patch("app.routers.earnings.set_earnings_cache", new=AsyncMock()) as set_,
    ):
        yield MagicMock(invalidate=inv, get=get, set=set_)


# ---------------------------------------------------------------------------
# Reusable client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def customer_client():
    return TestClient(build_app(make_customer()), raise_server_exceptions=True)


@pytest.fixture()
def provider_client():
    return TestClient(build_app(make_provider()), raise_server_exceptions=True)


@pytest.fixture()
def admin_client():
    return TestClient(build_app(make_admin()), raise_server_exceptions=True)


@pytest.fixture()
def anon_app():
    """
    Bare app with NO dependency overrides.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    return _bare_app()


@pytest.fixture()
def client_factory():
    def _make(
        current_user,
        services_client=None,
        payments_client=None,
        raise_server_exceptions=True,
    ) -> TestClient:
        return TestClient(
            build_app(
                current_user,
                services_client=services_client,
                payments_client=payments_client,
            ),
            raise_server_exceptions=raise_server_exceptions,
        )

    return _make
