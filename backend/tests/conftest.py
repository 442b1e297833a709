"""Shared fixtures for the teacher-session service tests.

The app runs against in-memory doubles of the session store, taxonomy
directory and PDF renderer; the real AuditLogWriter writes into a
recording database handle.
"""

import os

# must be in place before sensei.core.config is imported
os.environ.setdefault("SESSION_SWEEP_ENABLED", "false")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from fastapi.testclient import TestClient

from fakes import FakePdfRenderer, InMemorySessionStore, InMemoryTaxonomy, RecordingDb
from sensei.api import deps
from sensei.core.security import create_access_token
from sensei.crud.audit_logs import AuditLogWriter
from sensei.main import app

API = "/api/v1/teacher-sessions"


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def store():
    return InMemorySessionStore()


@pytest.fixture()
def taxonomy():
    return InMemoryTaxonomy()


@pytest.fixture()
def audit_db():
    return RecordingDb()


@pytest.fixture()
def pdf_renderer():
    return FakePdfRenderer()


@pytest.fixture()
def auth_headers():
    token = create_access_token("admin-1", role="admin", username="admin")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def client(store, taxonomy, audit_db, pdf_renderer, auth_headers):
    """FastAPI test client with every storage collaborator replaced."""
    app.dependency_overrides[deps.get_session_store] = lambda: store
    app.dependency_overrides[deps.get_taxonomy] = lambda: taxonomy
    app.dependency_overrides[deps.get_audit_writer] = lambda: AuditLogWriter(audit_db, module=deps.AUDIT_MODULE)
    app.dependency_overrides[deps.get_pdf_renderer] = lambda: pdf_renderer
    with TestClient(app) as c:
        c.headers.update(auth_headers)
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def create_session(client):
    """POST a session and return the created summary."""

    def _create(**overrides):
        body = {
            "username": "t1",
            "courseClassName": "C1",
            "sectionName": "S1",
            "subjectName": "Sub1",
            "sessionToken": "tok1",
        }
        body.update(overrides)
        response = client.post(API, json=body)
        assert response.status_code == 201, response.text
        return response.json()["session"]

    return _create
