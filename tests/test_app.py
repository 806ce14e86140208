"""HTTP tests for the webhook and admin endpoints via FastAPI's TestClient."""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import USER, FakeOracle, FixedClock, InMemoryGateway, RecordingChannel
from intake.allocator import SlotAllocator
from intake.app import EMPTY_TWIML, create_app
from intake.channels.twilio_channel import compute_signature
from intake.config import Settings
from intake.models.session import FlowState
from intake.oracle.base import Intent
from intake.session import FlowMachine
from intake.store import SessionStore
from intake.workflows import admission as wf

AUTH_TOKEN = "twilio-secret"
ADMIN = {"Authorization": "Bearer admin-secret"}


class FakeSettings:
    admin_api_key = "admin-secret"
    debug = False


@pytest.fixture
def parts():
    gateway = InMemoryGateway()
    oracle = FakeOracle()
    oracle.intents["i want to apply"] = Intent.admission
    channel = RecordingChannel()
    machine = FlowMachine(
        store=SessionStore(),
        oracle=oracle,
        gateway=gateway,
        allocator=SlotAllocator(gateway, clock=FixedClock()),
        channel=channel,
        started_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
    )
    return machine, channel


def _client(machine, **overrides) -> TestClient:
    options = {"twilio_validate_signature": False, **overrides}
    config = Settings(_env_file=None, **options)
    return TestClient(create_app(config=config, machine=machine))


@pytest.fixture(autouse=True)
def _admin(monkeypatch):
    monkeypatch.setattr("intake.auth.settings", FakeSettings())


class TestHealth:
    def test_health(self, parts):
        machine, _ = parts
        with _client(machine) as client:
            resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["sessions"] == 0


class TestTwilioWebhook:
    def test_message_starts_flow(self, parts):
        machine, channel = parts
        with _client(machine) as client:
            resp = client.post("/twilio/message", data={
                "From": USER, "Body": "I want to apply", "MessageSid": "SM1",
            })
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/xml")
        assert resp.text == EMPTY_TWIML
        assert "<Response" in resp.text

        assert machine.store.get(USER).state == FlowState.admission_displayname
        assert channel.texts() == [
            wf.prompt_for_state(FlowState.admission_displayname, machine.store.get(USER).data)
        ]

    def test_missing_sender_ignored(self, parts):
        machine, channel = parts
        with _client(machine) as client:
            resp = client.post("/twilio/message", data={"Body": "hello"})
        assert resp.status_code == 200
        assert channel.sent == []

    def test_valid_signature_accepted(self, parts):
        machine, channel = parts
        form = {"From": USER, "Body": "hello", "MessageSid": "SM2"}
        url = "http://testserver/twilio/message"
        signature = compute_signature(AUTH_TOKEN, url, form)

        with _client(machine, twilio_validate_signature=True,
                     twilio_auth_token=AUTH_TOKEN) as client:
            resp = client.post(
                "/twilio/message", data=form, headers={"X-Twilio-Signature": signature}
            )
        assert resp.status_code == 200
        assert channel.texts() == [wf.GREETING]

    def test_forwarded_url_is_signed(self, parts):
        machine, _ = parts
        form = {"From": USER, "Body": "hello"}
        signature = compute_signature(AUTH_TOKEN, "https://intake.example.com/twilio/message", form)

        with _client(machine, twilio_validate_signature=True,
                     twilio_auth_token=AUTH_TOKEN) as client:
            resp = client.post(
                "/twilio/message",
                data=form,
                headers={
                    "X-Twilio-Signature": signature,
                    "X-Forwarded-Proto": "https",
                    "X-Forwarded-Host": "intake.example.com",
                },
            )
        assert resp.status_code == 200

    def test_bad_signature_rejected(self, parts):
        machine, channel = parts
        with _client(machine, twilio_validate_signature=True,
                     twilio_auth_token=AUTH_TOKEN) as client:
            resp = client.post(
                "/twilio/message",
                data={"From": USER, "Body": "hello"},
                headers={"X-Twilio-Signature": "forged"},
            )
        assert resp.status_code == 403
        assert channel.sent == []


class TestAdminSessions:
    def _start(self, client):
        client.post("/twilio/message", data={"From": USER, "Body": "I want to apply"})

    def test_requires_token(self, parts):
        machine, _ = parts
        with _client(machine) as client:
            assert client.get("/api/sessions").status_code == 401
            assert client.get(
                "/api/sessions", headers={"Authorization": "Bearer nope"}
            ).status_code == 401

    def test_list_and_get(self, parts):
        machine, _ = parts
        with _client(machine) as client:
            self._start(client)
            listing = client.get("/api/sessions", headers=ADMIN).json()
            assert listing["count"] == 1
            assert listing["sessions"][0]["state"] == "admission_displayname"

            detail = client.get(f"/api/sessions/{USER}", headers=ADMIN).json()
            assert detail["user_id"] == USER
            assert detail["data"]["displayname"] is None

    def test_get_unknown(self, parts):
        machine, _ = parts
        with _client(machine) as client:
            resp = client.get("/api/sessions/whatsapp:+10000000000", headers=ADMIN)
        assert resp.status_code == 404

    def test_delete(self, parts):
        machine, _ = parts
        with _client(machine) as client:
            self._start(client)
            resp = client.delete(f"/api/sessions/{USER}", headers=ADMIN)
            assert resp.json() == {"deleted": USER}
            assert client.delete(f"/api/sessions/{USER}", headers=ADMIN).status_code == 404
        assert USER not in machine.store
