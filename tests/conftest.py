import os
import tempfile
from pathlib import Path

os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(tempfile.gettempdir()) / 'ndiscare_test_app.db'}")
os.environ["REDIS_URL"] = ""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from ndiscare.api import router
from ndiscare.api_ops import router as ops_router
from ndiscare.auth_api import reset_login_failures, router as auth_router
from ndiscare.billing_api import router as billing_router
from ndiscare.core.middleware import RequestTracingMiddleware
from ndiscare.db import Base, create_db_engine, get_db
from ndiscare.records_api import router as records_router

ADMIN_PASSWORD = "admin-pass-123"
STAFF_PASSWORD = "staff-pass-123"


@pytest.fixture(autouse=True)
def _clear_login_throttle():
    reset_login_failures()
    yield
    reset_login_failures()


@pytest.fixture()
def session_factory(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test_ndiscare.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture()
def app(session_factory):
    app = FastAPI()
    app.include_router(auth_router)
    app.include_router(router)
    app.include_router(records_router)
    app.include_router(billing_router)
    app.include_router(ops_router)
    app.add_middleware(RequestTracingMiddleware)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture()
def new_client(app):
    def _new_client() -> TestClient:
        return TestClient(app)

    return _new_client


@pytest.fixture()
def provision(new_client):
    """Create a tenant through the admin endpoint and return a client logged
    in as its Admin."""

    def _provision(slug: str, name: str | None = None):
        client = new_client()
        created = client.post(
            "/api/admin/tenants",
            json={
                "slug": slug,
                "name": name or slug.title(),
                "admin_username": "admin",
                "admin_password": ADMIN_PASSWORD,
                "admin_full_name": f"{slug.title()} Admin",
            },
        )
        assert created.status_code == 201, created.text
        login = client.post(
            "/api/auth/login",
            json={"tenant_slug": slug, "username": "admin", "password": ADMIN_PASSWORD},
        )
        assert login.status_code == 200, login.text
        return client, created.json()

    return _provision


@pytest.fixture()
def add_staff(new_client):
    """Create a user with the given role and return a client logged in as them."""

    def _add_staff(admin_client: TestClient, slug: str, username: str, role: str = "SupportWorker"):
        created = admin_client.post(
            "/api/users",
            json={
                "username": username,
                "password": STAFF_PASSWORD,
                "full_name": username.title(),
                "role": role,
            },
        )
        assert created.status_code == 201, created.text
        client = new_client()
        login = client.post(
            "/api/auth/login",
            json={"tenant_slug": slug, "username": username, "password": STAFF_PASSWORD},
        )
        assert login.status_code == 200, login.text
        return client, created.json()

    return _add_staff
