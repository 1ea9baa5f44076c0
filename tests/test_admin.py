import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from labchat.database import get_db
from labchat.main import app
from labchat.routers import admin as admin_router
from labchat.services.whatsapp_service import DeliveryError

PHONE = "919876543210"


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def open_session():
    return SimpleNamespace(
        id=uuid.uuid4(),
        phone=PHONE,
        lab_id=uuid.uuid4(),
        current_state="HUMAN_HANDOVER",
        status="handoff",
        context={},
        last_user_message_at=datetime(2026, 10, 1, 9, 30, tzinfo=timezone.utc),
        updated_at=datetime(2026, 10, 1, 9, 31, tzinfo=timezone.utc),
    )


class TestListing:
    def test_list_sessions(self, client, open_session):
        with patch.object(admin_router, "list_sessions", return_value=[open_session]) as list_mock:
            response = client.get("/admin/sessions", params={"status": "handoff"})

        assert response.status_code == 200
        data = response.json()
        assert data[0]["phone"] == PHONE
        assert data[0]["status"] == "handoff"
        assert list_mock.call_args.kwargs["status"] == "handoff"

    def test_list_messages(self, client):
        row = SimpleNamespace(
            id=uuid.uuid4(),
            message_id="wamid.1",
            phone=PHONE,
            message="Hi",
            direction="inbound",
            created_at=datetime(2026, 10, 1, 9, 30, tzinfo=timezone.utc),
        )
        with patch.object(admin_router, "list_messages_for_phone", return_value=[row]):
            response = client.get(f"/admin/sessions/{PHONE}/messages")

        assert response.status_code == 200
        assert response.json()[0]["message"] == "Hi"


class TestOperatorReply:
    def test_reply_sent(self, client, db, open_session):
        with patch.object(admin_router, "find_open_session", return_value=open_session), patch.object(
            admin_router, "send_text_message"
        ) as send_mock, patch.object(admin_router, "touch_session") as touch_mock:
            response = client.post(f"/admin/sessions/{PHONE}/reply", json={"message": "Your report is ready"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        send_mock.assert_called_once_with(db, lab_id=open_session.lab_id, phone=PHONE, text="Your report is ready")
        touch_mock.assert_called_once_with(db, open_session.id)
        db.commit.assert_called()

    def test_no_open_session(self, client):
        with patch.object(admin_router, "find_open_session", return_value=None):
            response = client.post(f"/admin/sessions/{PHONE}/reply", json={"message": "Hello"})

        assert response.status_code == 404

    def test_delivery_failure_is_502(self, client, open_session):
        with patch.object(admin_router, "find_open_session", return_value=open_session), patch.object(
            admin_router, "send_text_message", side_effect=DeliveryError("provider down")
        ):
            response = client.post(f"/admin/sessions/{PHONE}/reply", json={"message": "Hello"})

        assert response.status_code == 502

    def test_empty_message_rejected(self, client):
        response = client.post(f"/admin/sessions/{PHONE}/reply", json={"message": ""})

        assert response.status_code == 422


class TestComplete:
    def test_complete(self, client, db):
        with patch.object(admin_router, "complete_session", return_value=1):
            response = client.post(f"/admin/sessions/{PHONE}/complete")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        db.commit.assert_called_once()

    def test_complete_without_open_session(self, client):
        with patch.object(admin_router, "complete_session", return_value=0):
            response = client.post(f"/admin/sessions/{PHONE}/complete")

        assert response.status_code == 404


class TestAdminToken:
    def test_token_required_when_configured(self, client):
        with patch.object(admin_router.settings, "admin_token", "t0ken"), patch.object(
            admin_router, "list_sessions", return_value=[]
        ):
            denied = client.get("/admin/sessions")
            allowed = client.get("/admin/sessions", headers={"X-Admin-Token": "t0ken"})

        assert denied.status_code == 401
        assert allowed.status_code == 200
