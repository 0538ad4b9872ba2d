"""介護者 API（プロファイル・タスク・ギャラリー）のユニットテスト

Firebase Auth を差し替え、LOCAL_MODE の Components（インメモリストア + Outbox）で
ルート〜サービス〜ストアを通しで動かす。
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from halloo.adapters.memory_store import InMemoryEntityStore
from halloo.adapters.outbox_sms import OutboxSMSSender
from halloo.config import AppConfig
from halloo.domain.errors import SendFailed
from halloo.domain.models import InboundSMS
from halloo.domain.ports import SMSSender
from halloo.entrypoints.api.app import app
from halloo.entrypoints.api.deps import AuthInfo, get_auth_info, get_components
from halloo.entrypoints.factory import create_components

UID = "caregiver-uid-1"
PHONE = "+15551234567"
_AUTH = AuthInfo(uid=UID, email="alice@example.com", display_name="Alice")
_LOCAL = AppConfig(
    project_id="",
    twilio_account_sid="",
    twilio_auth_token="",
    twilio_phone_number="",
    local_mode=True,
)


@pytest.fixture
def components():
    return create_components(
        config=_LOCAL, store=InMemoryEntityStore(), sender=OutboxSMSSender()
    )


@pytest.fixture
def client(components):
    app.dependency_overrides[get_auth_info] = lambda: _AUTH
    app.dependency_overrides[get_components] = lambda: components
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _create_profile(client, phone: str = "(555) 123-4567"):
    return client.post(
        "/api/profiles",
        json={"name": "Mom", "phone_number": phone, "relationship": "Mother"},
    )


# ========== プロファイル ==========


class TestProfiles:
    def test_create_profile(self, client, components):
        response = _create_profile(client)

        assert response.status_code == 201
        body = response.json()
        assert body["id"] == PHONE
        assert body["phone_number"] == PHONE
        assert body["status"] == "pendingConfirmation"
        [sent] = components.sender.sent
        assert sent.body == (
            "Hi Mom! Alice added you to Halloo care reminders. Reply YES to confirm."
        )

    def test_list_profiles(self, client):
        _create_profile(client)

        response = client.get("/api/profiles")

        assert response.status_code == 200
        assert [p["id"] for p in response.json()] == [PHONE]

    def test_invalid_phone_is_422(self, client):
        assert _create_profile(client, phone="12").status_code == 422

    def test_send_failure_is_502(self):
        sender = MagicMock(spec=SMSSender)
        sender.send_sms.side_effect = SendFailed("Twilio send failed", code=21211)
        components = create_components(
            config=_LOCAL, store=InMemoryEntityStore(), sender=sender
        )
        app.dependency_overrides[get_auth_info] = lambda: _AUTH
        app.dependency_overrides[get_components] = lambda: components
        try:
            response = _create_profile(TestClient(app))
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 502
        assert components.store.get_profile(UID, PHONE).is_pending

    def test_quota_exceeded_is_429(self, client, components):
        components.store.reset_sms_quota(UID, datetime(2099, 1, 1, tzinfo=timezone.utc))
        components.store.increment_sms_usage(UID, 50)

        response = _create_profile(client)

        assert response.status_code == 429
        assert components.sender.sent == []
        assert components.store.get_profile(UID, PHONE).is_pending

        resend = client.post(f"/api/profiles/{PHONE}/resend-confirmation")
        assert resend.status_code == 429

    def test_opted_out_flag_listed(self, client, components):
        _create_profile(client)
        components.reconciler.reconcile(
            InboundSMS(from_phone="555-123-4567", body="STOP", message_sid="SM" + "f" * 32)
        )

        [profile] = client.get("/api/profiles").json()
        assert profile["sms_opted_out"] is True
        assert profile["status"] == "inactive"

    def test_resend_confirmation(self, client, components):
        _create_profile(client)

        response = client.post(f"/api/profiles/{PHONE}/resend-confirmation")

        assert response.status_code == 200
        assert len(components.sender.sent) == 2

    def test_resend_missing_is_404(self, client):
        response = client.post(f"/api/profiles/{PHONE}/resend-confirmation")
        assert response.status_code == 404

    def test_delete_profile(self, client, components):
        _create_profile(client)

        assert client.delete(f"/api/profiles/{PHONE}").status_code == 204
        assert components.store.get_profile(UID, PHONE) is None
        assert client.delete(f"/api/profiles/{PHONE}").status_code == 404

    def test_confirmation_via_reply(self, client, components):
        """作成 → 受信 YES → 一覧で confirmed になる"""
        _create_profile(client)

        components.reconciler.reconcile(
            InboundSMS(from_phone="555-123-4567", body="YES", message_sid="SM" + "e" * 32)
        )

        [profile] = client.get("/api/profiles").json()
        assert profile["status"] == "confirmed"
        assert profile["confirmed_at"] is not None


# ========== タスク ==========


class TestTasks:
    @pytest.fixture(autouse=True)
    def _profile(self, client):
        _create_profile(client)

    def _create(self, client, **overrides):
        body = {"title": "Take pills", "scheduled_time": "08:00", **overrides}
        return client.post(f"/api/profiles/{PHONE}/tasks", json=body)

    def test_create_task(self, client):
        response = self._create(client)

        assert response.status_code == 201
        body = response.json()
        assert body["title"] == "Take pills"
        assert body["frequency"] == "daily"
        assert body["scheduled_time"] == "08:00"
        assert body["status"] == "active"
        assert len(body["upcoming"]) == 3

    def test_create_custom_task(self, client):
        response = self._create(
            client, frequency="custom", custom_days=["monday", "thursday"]
        )

        assert response.status_code == 201
        assert response.json()["custom_days"] == ["monday", "thursday"]

    def test_custom_without_days_is_422(self, client):
        assert self._create(client, frequency="custom").status_code == 422

    def test_unknown_frequency_is_422(self, client):
        assert self._create(client, frequency="hourly").status_code == 422

    def test_missing_profile_is_404(self, client):
        response = client.post(
            "/api/profiles/+15559999999/tasks",
            json={"title": "Walk", "scheduled_time": "08:00"},
        )
        assert response.status_code == 404

    def test_list_tasks(self, client):
        task_id = self._create(client).json()["id"]

        response = client.get(f"/api/profiles/{PHONE}/tasks")

        assert response.status_code == 200
        assert [t["id"] for t in response.json()] == [task_id]

    @pytest.mark.parametrize(
        "action,expected", [("pause", "paused"), ("resume", "active"), ("archive", "archived")]
    )
    def test_update_task(self, client, action, expected):
        task_id = self._create(client).json()["id"]

        response = client.patch(f"/api/tasks/{PHONE}/{task_id}", json={"action": action})

        assert response.status_code == 200
        assert response.json()["status"] == expected

    def test_paused_task_has_no_upcoming(self, client):
        task_id = self._create(client).json()["id"]

        body = client.patch(
            f"/api/tasks/{PHONE}/{task_id}", json={"action": "pause"}
        ).json()

        assert body["upcoming"] == []

    def test_update_missing_task_is_404(self, client):
        response = client.patch(f"/api/tasks/{PHONE}/nope", json={"action": "pause"})
        assert response.status_code == 404

    def test_invalid_action_is_422(self, client):
        task_id = self._create(client).json()["id"]
        response = client.patch(f"/api/tasks/{PHONE}/{task_id}", json={"action": "delete"})
        assert response.status_code == 422


# ========== ギャラリー ==========


class TestGallery:
    def test_empty(self, client):
        assert client.get("/api/gallery").json() == []

    def test_confirmation_event_listed(self, client, components):
        _create_profile(client)
        components.reconciler.reconcile(
            InboundSMS(from_phone=PHONE, body="yes", message_sid="SM" + "f" * 32)
        )

        [event] = client.get("/api/gallery").json()

        assert event["profile_id"] == PHONE
        assert event["event_type"] == "profileCreated"
        assert event["data"]["profile_name"] == "Mom"

    def test_filter_by_profile(self, client, components):
        _create_profile(client)
        components.reconciler.reconcile(
            InboundSMS(from_phone=PHONE, body="yes", message_sid="SM" + "f" * 32)
        )

        response = client.get("/api/gallery", params={"profile_id": "+15550000000"})

        assert response.json() == []
