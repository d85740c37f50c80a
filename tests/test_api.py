"""HTTP surface: auth, error mapping and an end-to-end negotiation over the API."""
import httpx
import pytest

from meetingflow.config import settings
from meetingflow.dependencies.services import get_scheduling_service, get_task_queue, get_webhook_service
from meetingflow.main import app
from meetingflow.routes.inbound import twilio_signature
from meetingflow.services.jwt_service import JWTService
from meetingflow.services.webhook_service import WebhookService

ATTENDEES = [
    {"side": "internal", "name": "Host", "email": "host@example.com", "user_id": "user-1"},
    {"side": "external", "name": "Dana", "email": "dana@client.com", "phone": "+15555550100", "is_primary_contact": True},
]


def auth(role="member"):
    token = JWTService().create_token("user-1", role, "host@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def queued():
    return []


@pytest.fixture
async def client(scheduling, session_factory, queued):
    async def enqueue(function, *args):
        queued.append((function, *args))
        return True

    webhooks = WebhookService(
        session_factory=session_factory,
        transport=httpx.MockTransport(lambda request: httpx.Response(200)),
    )
    app.dependency_overrides[get_scheduling_service] = lambda: scheduling
    app.dependency_overrides[get_webhook_service] = lambda: webhooks
    app.dependency_overrides[get_task_queue] = lambda: enqueue

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def create_request(client, **overrides):
    body = {"title": "Intro call", "attendees": ATTENDEES, **overrides}
    response = await client.post("/api/scheduling/requests", json=body, headers=auth())
    assert response.status_code == 201, response.text
    return response.json()


class TestAuth:
    async def test_invalid_token(self, client):
        response = await client.get("/api/scheduling/requests", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    async def test_webhooks_need_admin(self, client):
        response = await client.get("/api/webhooks", headers=auth("member"))
        assert response.status_code == 403

    async def test_delete_needs_admin(self, client):
        request = await create_request(client)

        response = await client.delete(f"/api/scheduling/requests/{request['id']}", headers=auth("member"))
        assert response.status_code == 403

        response = await client.delete(f"/api/scheduling/requests/{request['id']}", headers=auth("admin"))
        assert response.status_code == 200


class TestRequests:
    async def test_create_and_fetch(self, client):
        created = await create_request(client, thread_key="thread-api")

        assert created["status"] == "draft"
        assert created["owner_id"] == "user-1"
        assert sorted(a["side"] for a in created["attendees"]) == ["external", "internal"]

        response = await client.get(f"/api/scheduling/requests/{created['id']}", headers=auth())
        assert response.status_code == 200
        assert response.json()["thread_key"] == "thread-api"

    async def test_unknown_request(self, client):
        response = await client.get("/api/scheduling/requests/missing", headers=auth())
        assert response.status_code == 404

    async def test_bad_timezone(self, client):
        body = {"title": "Intro call", "attendees": ATTENDEES, "timezone": "Mars/Olympus"}
        response = await client.post("/api/scheduling/requests", json=body, headers=auth())
        assert response.status_code == 422

    async def test_duplicate_live_thread(self, client):
        await create_request(client, thread_key="thread-dup")

        body = {"title": "Again", "attendees": ATTENDEES, "thread_key": "thread-dup"}
        response = await client.post("/api/scheduling/requests", json=body, headers=auth())
        assert response.status_code == 409

    async def test_filter_by_status(self, client):
        request = await create_request(client)

        response = await client.get("/api/scheduling/requests", params={"status": "draft"}, headers=auth())
        assert [r["id"] for r in response.json()] == [request["id"]]

        response = await client.get("/api/scheduling/requests", params={"status": "confirmed"}, headers=auth())
        assert response.json() == []


class TestNegotiation:
    async def test_propose_send_confirm(self, client, email_sender, queued):
        request = await create_request(client)
        base = f"/api/scheduling/requests/{request['id']}"

        response = await client.post(f"{base}/draft", json={"seed": 9}, headers=auth())
        assert response.status_code == 201
        draft = response.json()
        assert len(draft["slots"]) == 4

        response = await client.post(f"{base}/draft", json={}, headers=auth())
        assert response.status_code == 409

        response = await client.put(f"{base}/draft", json={"body": "Edited"}, headers=auth())
        assert response.json()["body"] == "Edited"

        response = await client.put(f"{base}/draft", json={"slots": []}, headers=auth())
        assert response.status_code == 422

        response = await client.post(f"{base}/send", json={}, headers=auth())
        sent = response.json()
        assert sent["sent"] is True
        assert sent["channel"] == "email"
        assert sent["status"] == "proposed"
        assert email_sender.sent[0][1].body == "Edited"

        naive = draft["slots"][0]["start"].replace("+00:00", "")
        response = await client.post(f"{base}/confirm", json={"slot_start": naive}, headers=auth())
        assert response.status_code == 422

        response = await client.post(f"{base}/confirm", json={"slot_start": draft["slots"][0]["start"]}, headers=auth())
        assert response.status_code == 200
        confirmed = response.json()
        assert confirmed["status"] == "confirmed"
        assert confirmed["confirmed_slot_end"] == draft["slots"][0]["end"]
        assert queued == [("drive_request", request["id"])]

        response = await client.post(f"{base}/cancel", json={}, headers=auth())
        assert response.status_code == 409
        assert response.json()["detail"]["current_status"] == "confirmed"

        response = await client.get(f"{base}/actions", headers=auth())
        sequences = [action["sequence"] for action in response.json()]
        assert sequences == list(range(1, len(sequences) + 1))

        response = await client.post(f"/api/reports/postmortems/{request['id']}", headers=auth())
        assert response.status_code == 200
        assert response.json()["efficiency_score"] == 100

    async def test_send_outage_schedules_retry(self, client, email_sender, sms_sender):
        email_sender.outages = 1
        sms_sender.outages = 1
        request = await create_request(client)
        base = f"/api/scheduling/requests/{request['id']}"
        await client.post(f"{base}/draft", json={}, headers=auth())

        response = await client.post(f"{base}/send", json={}, headers=auth())

        assert response.status_code == 200
        sent = response.json()
        assert sent["sent"] is False
        assert sent["outcome"] == "retry_scheduled"
        assert sent["status"] == "proposed"
        assert sent["next_action_at"] is not None

    async def test_postmortem_of_live_request(self, client):
        request = await create_request(client)

        response = await client.post(f"/api/reports/postmortems/{request['id']}", headers=auth())
        assert response.status_code == 409

    async def test_performance_range_validated(self, client):
        params = {"start": "2026-10-02T00:00:00", "end": "2026-10-01T00:00:00"}
        response = await client.get("/api/reports/performance", params=params, headers=auth())
        assert response.status_code == 422

        params = {"start": "2026-10-01T00:00:00", "end": "2026-10-02T00:00:00"}
        response = await client.get("/api/reports/performance", params=params, headers=auth())
        assert response.status_code == 200
        assert response.json()["overview"]["total_requests"] == 0


class TestInbound:
    async def test_uncorrelated_reply_accepted(self, client, queued):
        body = {"provider": "email", "conversation_id": "nobody", "message_id": "m-1"}

        response = await client.post("/api/inbound/replies", json=body)

        assert response.status_code == 202
        assert response.json()["outcome"] == "correlation_failed"
        assert queued == []

    async def test_reply_enqueues_driver(self, client, queued):
        request = await create_request(client)
        base = f"/api/scheduling/requests/{request['id']}"
        await client.post(f"{base}/draft", json={}, headers=auth())
        await client.post(f"{base}/send", json={}, headers=auth())

        body = {
            "provider": "email",
            "conversation_id": f"conv-{request['thread_key']}",
            "message_id": "m-2",
            "body": "None of these work, how about next week?",
        }
        response = await client.post("/api/inbound/replies", json=body)

        assert response.status_code == 200
        assert response.json() == {"outcome": "processed", "request_id": request["id"], "status": "proposed"}
        assert queued == [("drive_request", request["id"])]

        response = await client.post("/api/inbound/replies", json=body)
        assert response.json()["outcome"] == "duplicate"
        assert len(queued) == 1

    async def test_sms_status_callback(self, client, queued):
        request = await create_request(client, preferred_channel="sms")
        base = f"/api/scheduling/requests/{request['id']}"
        await client.post(f"{base}/draft", json={}, headers=auth())
        await client.post(f"{base}/send", json={}, headers=auth())

        response = await client.post(
            "/api/inbound/sms-status",
            data={"MessageSid": "sms-msg-1", "MessageStatus": "delivered"},
        )
        assert response.status_code == 204
        assert queued == []

        response = await client.post(
            "/api/inbound/sms-status",
            data={"MessageSid": "sms-msg-1", "MessageStatus": "undelivered", "ErrorCode": "30003"},
        )
        assert response.status_code == 204
        assert queued == [("drive_request", request["id"])]

    async def test_sms_status_checks_twilio_signature(self, client, monkeypatch):
        monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "twilio-secret")
        monkeypatch.setattr(settings, "TWILIO_STATUS_CALLBACK_URL", "https://api.example.com/api/inbound/sms-status")
        form = {"MessageSid": "SM-unknown", "MessageStatus": "delivered"}

        response = await client.post("/api/inbound/sms-status", data=form, headers={"X-Twilio-Signature": "forged"})
        assert response.status_code == 401

        response = await client.post("/api/inbound/sms-status", data=form)
        assert response.status_code == 401

        signature = twilio_signature("twilio-secret", settings.TWILIO_STATUS_CALLBACK_URL, form)
        response = await client.post("/api/inbound/sms-status", data=form, headers={"X-Twilio-Signature": signature})
        assert response.status_code == 204

    async def test_sms_status_ignores_inbound_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "INBOUND_API_TOKEN", "gateway-secret")

        response = await client.post(
            "/api/inbound/sms-status",
            data={"MessageSid": "SM-unknown", "MessageStatus": "delivered"},
        )
        assert response.status_code == 204

        body = {"provider": "email", "conversation_id": "nobody", "message_id": "m-1"}
        response = await client.post("/api/inbound/replies", json=body)
        assert response.status_code == 401

    def test_twilio_signature_matches_documented_example(self):
        params = {
            "CallSid": "CA1234567890ABCDE",
            "Caller": "+12349013030",
            "Digits": "1234",
            "From": "+12349013030",
            "To": "+18005551212",
        }
        signature = twilio_signature("12345", "https://mycompany.com/myapp.php?foo=1&bar=2", params)
        assert signature == "RSOYDt4T1cUTdK1PDd93/VVr8B8="


class TestWebhookRoutes:
    async def test_register_and_list(self, client):
        body = {"name": "crm", "url": "https://hooks.example.com/in", "events": ["meeting.scheduled"]}

        response = await client.post("/api/webhooks", json=body, headers=auth("admin"))
        assert response.status_code == 201
        created = response.json()
        assert created["secret_key"]

        response = await client.get("/api/webhooks", headers=auth("admin"))
        assert [w["id"] for w in response.json()] == [created["id"]]
        assert response.json()[0]["secret_key"] is None

        response = await client.post(f"/api/webhooks/{created['id']}/test", headers=auth("admin"))
        assert response.json()["success"] is True

        response = await client.patch(f"/api/webhooks/{created['id']}", json={"is_active": False}, headers=auth("admin"))
        assert response.json()["is_active"] is False

    async def test_unknown_event_rejected(self, client):
        body = {"name": "crm", "url": "https://hooks.example.com/in", "events": ["meeting.rescheduled"]}

        response = await client.post("/api/webhooks", json=body, headers=auth("admin"))
        assert response.status_code == 422


class TestHealth:
    async def test_root(self, client):
        response = await client.get("/")
        assert response.json()["status"] == "running"

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "connected"
