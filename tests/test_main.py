"""Smoke tests for the assembled application."""

from fastapi.testclient import TestClient

from app.main import create_app


def test_health_check():
    # No context manager: the Tortoise startup hook is not run
    client = TestClient(create_app())
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_routers_mounted():
    paths = {route.path for route in create_app().routes}
    assert "/bookings/" in paths
    assert "/bookings/{booking_id}/status" in paths
    assert "/bookings/{booking_id}/refunds" in paths
    assert "/earnings/summary" in paths
