from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from agendabot import runtime
from agendabot.config import settings
from agendabot.main import app
from agendabot.schemas.job import JobStatus
from agendabot.schemas.webhook import EvolutionMessage, EvolutionWebhook
from agendabot.services.handover_service import HandoverGate, InMemoryPauseStore
from agendabot.services.job_queue import InMemoryJobStore, JobDispatcher

ADMIN = {"X-Admin-Token": "secret"}


def _upsert(message=None, remote_jid="5511999990000@s.whatsapp.net", from_me=False, event="messages.upsert"):
    return {
        "event": event,
        "instance": "c1",
        "data": {
            "key": {"remoteJid": remote_jid, "fromMe": from_me, "id": "MSG1"},
            "pushName": "Maria",
            "message": {"conversation": "quero cortar o cabelo"} if message is None else message,
        },
    }


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def dispatcher():
    store = InMemoryJobStore()
    dispatcher = JobDispatcher(store, AsyncMock())
    follow_ups = Mock()
    follow_ups.process_all_companies = AsyncMock(return_value={"status": "ok", "sent": 0})
    follow_ups.check_and_send_follow_ups = AsyncMock(return_value={"status": "ok", "company_id": "c1"})
    runtime.set_runtime(
        runtime.Runtime(
            dispatcher=dispatcher,
            follow_ups=follow_ups,
            pipeline=None,
            memory=None,
            handover=HandoverGate(InMemoryPauseStore()),
        )
    )
    yield dispatcher
    runtime.set_runtime(None)


@pytest.fixture
def admin_token():
    with patch.object(settings, "admin_token", "secret"):
        yield


class TestEvolutionMessage:
    def test_text_sources(self):
        assert EvolutionMessage(message={"conversation": " oi "}).text() == "oi"
        assert EvolutionMessage(message={"extendedTextMessage": {"text": "olá"}}).text() == "olá"
        assert EvolutionMessage(message={"imageMessage": {"caption": "foto"}}).text() == "foto"
        assert EvolutionMessage(message={"stickerMessage": {}}).text() == ""

    def test_sender_and_group(self):
        message = EvolutionMessage(key={"remoteJid": "1203630@g.us"})
        assert message.is_group is True
        assert EvolutionMessage(key={"remoteJid": "5511@s.whatsapp.net"}).sender == "5511"

    def test_batched_messages(self):
        webhook = EvolutionWebhook(event="messages.upsert", data={"messages": [{"key": {"id": "a"}}, {"key": {"id": "b"}}]})
        assert [m.key.id for m in webhook.messages()] == ["a", "b"]


class TestEvolutionWebhook:
    def test_text_message_is_enqueued_only(self, client, dispatcher):
        response = client.post("/webhooks/evolution/c1", json=_upsert())

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["enqueued"] == 1
        jobs = list(dispatcher.store._jobs.values())
        assert len(jobs) == 1
        assert jobs[0].status == JobStatus.PENDING
        assert jobs[0].payload.company_id == "c1"
        assert jobs[0].payload.subject_address == "5511999990000"
        assert jobs[0].payload.raw_text == "quero cortar o cabelo"
        assert jobs[0].payload.provider_metadata["message_id"] == "MSG1"
        dispatcher.handler.assert_not_called()

    @patch("agendabot.runtime.enqueue_inbound_message")
    def test_group_and_empty_messages_are_skipped(self, mock_enqueue, client):
        client.post("/webhooks/evolution/c1", json=_upsert(remote_jid="120363@g.us"))
        client.post("/webhooks/evolution/c1", json=_upsert(message={"stickerMessage": {}}))

        mock_enqueue.assert_not_called()

    @patch("agendabot.runtime.enqueue_inbound_message")
    def test_other_events_are_acknowledged(self, mock_enqueue, client):
        response = client.post("/webhooks/evolution/c1", json=_upsert(event="connection.update"))

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "enqueued": 0,
            "held": 0,
            "message": "ignored event connection.update",
        }
        mock_enqueue.assert_not_called()

    def test_invalid_body(self, client):
        response = client.post(
            "/webhooks/evolution/c1", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 200
        assert response.json()["success"] is False

    @patch("agendabot.runtime.enqueue_inbound_message", side_effect=RuntimeError("db down"))
    def test_enqueue_failure_is_reported(self, mock_enqueue, client, dispatcher):
        response = client.post("/webhooks/evolution/c1", json=_upsert())

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["message"] == "enqueue failed"


class TestOwnerTakeover:
    @patch("agendabot.runtime._log_message")
    def test_owner_message_pauses_and_holds_client_messages(self, mock_log, client, dispatcher):
        owner_message = _upsert(message={"conversation": "Oi Maria, aqui é o João"}, from_me=True)
        owner = client.post("/webhooks/evolution/c1", json=owner_message)
        reply = client.post("/webhooks/evolution/c1", json=_upsert())

        assert owner.json()["enqueued"] == 0
        assert reply.json()["success"] is True
        assert reply.json()["enqueued"] == 0
        assert reply.json()["held"] == 1
        assert dispatcher.store._jobs == {}
        assert mock_log.call_args_list[0].args == ("c1", "5511999990000", "Oi Maria, aqui é o João", "outgoing")
        assert mock_log.call_args_list[1].args == ("c1", "5511999990000", "quero cortar o cabelo", "incoming")

    @patch("agendabot.runtime._log_message")
    def test_pause_covers_only_that_client(self, mock_log, client, dispatcher):
        client.post("/webhooks/evolution/c1", json=_upsert(from_me=True))

        other = client.post("/webhooks/evolution/c1", json=_upsert(remote_jid="5511888880000@s.whatsapp.net"))
        elsewhere = client.post("/webhooks/evolution/c2", json=_upsert())

        assert other.json()["enqueued"] == 1
        assert elsewhere.json()["enqueued"] == 1

    @patch("agendabot.runtime._log_message")
    def test_expired_pause_lets_messages_through(self, mock_log, client, dispatcher):
        pauses = runtime.get_runtime().handover.store
        pauses.pause("c1", "5511999990000", datetime.now(timezone.utc) - timedelta(seconds=1))

        response = client.post("/webhooks/evolution/c1", json=_upsert())

        assert response.json()["enqueued"] == 1
        assert response.json()["held"] == 0
        mock_log.assert_not_called()


class TestAdminRoutes:
    def test_missing_configuration(self, client, dispatcher):
        with patch.object(settings, "admin_token", None):
            response = client.get("/queue/health", headers=ADMIN)
        assert response.status_code == 500

    def test_wrong_token(self, client, dispatcher, admin_token):
        assert client.get("/queue/health", headers={"X-Admin-Token": "nope"}).status_code == 401
        assert client.get("/queue/health").status_code == 401

    def test_queue_health(self, client, dispatcher, admin_token):
        dispatcher.enqueue("c1", "5511", "oi")

        response = client.get("/queue/health", headers=ADMIN)

        assert response.status_code == 200
        body = response.json()
        assert body["pending"] == 1
        assert body["failed"] == 0
        assert body["concurrency"] == 50

    def test_failed_jobs(self, client, dispatcher, admin_token):
        job = dispatcher.enqueue("c1", "5511", "oi")
        dispatcher.store.fail(job.id, "ValueError: boom")

        response = client.get("/queue/failed", headers=ADMIN)

        assert response.status_code == 200
        assert response.json()[0]["id"] == job.id
        assert response.json()[0]["last_error"] == "ValueError: boom"

    def test_remove_job(self, client, dispatcher, admin_token):
        job = dispatcher.enqueue("c1", "5511", "oi")

        assert client.delete(f"/queue/jobs/{job.id}", headers=ADMIN).json() == {"removed": job.id}
        assert client.delete(f"/queue/jobs/{job.id}", headers=ADMIN).status_code == 404

    def test_follow_up_check_now(self, client, dispatcher, admin_token):
        response = client.post("/follow-up/check-now", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "sent": 0}
        runtime.get_runtime().follow_ups.process_all_companies.assert_awaited_once()

    def test_follow_up_check_company(self, client, dispatcher, admin_token):
        response = client.post("/follow-up/check/c1", headers=ADMIN)

        assert response.json()["company_id"] == "c1"
        runtime.get_runtime().follow_ups.check_and_send_follow_ups.assert_awaited_once_with("c1")

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    @patch("agendabot.services.alert_service.send_alert", return_value=True)
    def test_alert_check(self, mock_send, client, admin_token):
        response = client.post("/alerts/test?level=WARNING", headers=ADMIN)

        assert response.json() == {"sent": True, "level": "WARNING", "detail": "delivered"}
        assert mock_send.call_args[0][0] == "WARNING"

    @patch("agendabot.services.alert_service.send_alert", return_value=False)
    def test_alert_check_not_configured(self, mock_send, client, admin_token):
        body = client.post("/alerts/test", headers=ADMIN).json()

        assert body["sent"] is False
        assert body["level"] == "INFO"

    def test_alert_check_rejects_unknown_level(self, client, admin_token):
        assert client.post("/alerts/test?level=LOUD", headers=ADMIN).status_code == 422
