"""Shared fixtures: isolated apps bound to a temporary data directory, and account helpers."""

from collections.abc import Callable
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.settings import Settings
from app.main import create_app

HTTP_200_OK = 200
HTTP_201_CREATED = 201


@pytest.fixture
def make_app(tmp_path: Path) -> Callable[..., FastAPI]:
    """Build apps whose JSON store lives under ``tmp_path``; keyword arguments override settings."""

    def _make(**overrides: object) -> FastAPI:
        return create_app(Settings(data_dir=str(tmp_path / "data"), **overrides))

    return _make


@pytest.fixture
def app(make_app: Callable[..., FastAPI]) -> FastAPI:
    """Default isolated app."""
    return make_app()


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """TestClient over the isolated app."""
    return TestClient(app)


def bearer(token: str) -> dict[str, str]:
    """Authorization header for a bearer token."""
    return {"Authorization": f"Bearer {token}"}


def signup(client: TestClient, email: str, password: str = "secret") -> str:
    """Register and log in a user, returning the bearer token."""
    resp = client.post("/api/register", json={"email": email, "password": password, "name": email.split("@")[0]})
    if resp.status_code != HTTP_201_CREATED:
        msg = f"Register failed: {resp.status_code} {resp.text}"
        raise AssertionError(msg)
    resp = client.post("/api/login", json={"email": email, "password": password})
    if resp.status_code != HTTP_200_OK:
        msg = f"Login failed: {resp.status_code} {resp.text}"
        raise AssertionError(msg)
    return resp.json()["token"]


def make_budget(client: TestClient, token: str, name: str = "Home") -> int:
    """Create a budget owned by the token's user and return its id."""
    resp = client.post("/api/budgets", json={"name": name}, headers=bearer(token))
    if resp.status_code != HTTP_201_CREATED:
        msg = f"Budget creation failed: {resp.status_code} {resp.text}"
        raise AssertionError(msg)
    return resp.json()["id"]
