"""
Tests for the /webhook endpoints.

Tests cover:
- GET verification handshake
- Signature checks on POST
- Rejection of invalid JSON and non-WhatsApp notifications (422/400)
- End-to-end ingestion of messages, statuses and conversations
- Acknowledgment despite persistence failures
"""

import json

import pytest

from wa_ingest.models import Contact, Conversation, InteractiveSelection, Message, MessageStatusEvent
from wa_ingest.storage import SessionLocal, StorageError

from payloads import change_value, contact, conversation, message, notification, post_webhook, sign, status, text_message


def query(model):
    with SessionLocal() as session:
        return session.query(model).all()


class TestVerification:

    def test_matching_token_echoes_challenge(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "test-verify-token",
            "hub.challenge": "1158201444",
        })

        assert response.status_code == 200
        assert response.text == "1158201444"
        assert response.headers["content-type"].startswith("text/plain")

    def test_wrong_token_forbidden(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "nope",
            "hub.challenge": "1158201444",
        })

        assert response.status_code == 403

    def test_wrong_mode_forbidden(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "unsubscribe",
            "hub.verify_token": "test-verify-token",
            "hub.challenge": "1158201444",
        })

        assert response.status_code == 403

    def test_missing_parameters(self, client):
        response = client.get("/webhook", params={"hub.mode": "subscribe"})

        assert response.status_code == 400


class TestSignature:

    def test_missing_signature(self, client):
        response = client.post(
            "/webhook",
            content=json.dumps(notification(change_value())),
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_signature_with_different_secret(self, client):
        body = json.dumps(notification(change_value()))

        response = client.post(
            "/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(body, "wrong_secret")},
        )

        assert response.status_code == 401

    def test_signature_for_different_body(self, client):
        body = json.dumps(notification(change_value()))
        other = json.dumps(notification(change_value(messages=[])))

        response = client.post(
            "/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(other)},
        )

        assert response.status_code == 401

    def test_check_disabled_without_app_secret(self, client, monkeypatch):
        from wa_ingest.config import settings
        monkeypatch.setattr(settings, "APP_SECRET", "")

        response = client.post("/webhook", json=notification(change_value()))

        assert response.status_code == 200


class TestRejection:

    def test_invalid_json(self, client):
        body = "not valid json"

        response = client.post(
            "/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(body)},
        )

        assert response.status_code == 422

    @pytest.mark.parametrize("payload", [
        {"object": "page", "entry": []},
        {"object": "whatsapp_business_account"},
        [1, 2, 3],
    ])
    def test_not_a_whatsapp_notification(self, client, payload):
        response = post_webhook(client, payload)

        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid webhook object"}


class TestIngestion:

    def test_text_message_stored(self, client):
        response = post_webhook(client, notification(change_value(
            contacts=[contact("1555", "Alice")],
            messages=[text_message("1555", "wamid.A", "hi")],
        )))

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        contacts = query(Contact)
        assert [(c.wa_id, c.name) for c in contacts] == [("1555", "Alice")]
        (stored,) = query(Message)
        assert (stored.direction, stored.type, stored.content, stored.status) == ("incoming", "text", "hi", "received")

    def test_duplicate_delivery_acknowledged_once_stored(self, client):
        payload = notification(change_value(messages=[
            message("1555", "wamid.I", "interactive", {
                "type": "button_reply",
                "button_reply": {"id": "yes", "title": "Yes"},
            }),
        ]))

        assert post_webhook(client, payload).status_code == 200
        assert post_webhook(client, payload).status_code == 200

        assert len(query(Message)) == 1
        assert len(query(InteractiveSelection)) == 1

    def test_status_after_message(self, client):
        post_webhook(client, notification(change_value(messages=[text_message("1555", "wamid.A", "hi")])))

        response = post_webhook(client, notification(change_value(statuses=[
            status("wamid.A", "delivered", conversation=conversation("CONV1")),
        ])))

        assert response.status_code == 200
        assert query(Message)[0].status == "delivered"
        assert [row.status for row in query(MessageStatusEvent)] == ["delivered"]
        assert len(query(Conversation)) == 1

    def test_status_for_unknown_message(self, client):
        response = post_webhook(client, notification(change_value(statuses=[status("wamid.ZZZ", "read")])))

        assert response.status_code == 200
        assert query(Message) == []
        assert [row.wa_message_id for row in query(MessageStatusEvent)] == ["wamid.ZZZ"]

    def test_messages_and_statuses_in_one_notification(self, client):
        response = post_webhook(client, notification(
            change_value(messages=[
                text_message("1555", "wamid.1", "one"),
                message("1555", "wamid.2", "location", {"latitude": 1.0, "longitude": 2.0}),
            ]),
            change_value(statuses=[status("wamid.1", "read")]),
        ))

        assert response.status_code == 200
        stored = {m.wa_message_id: m for m in query(Message)}
        assert stored["wamid.1"].status == "read"
        assert stored["wamid.2"].latitude == 1.0
        assert stored["wamid.2"].location_name is None

    def test_platform_errors_acknowledged(self, client):
        response = post_webhook(client, notification(change_value(errors=[
            {"code": 131000, "title": "Something went wrong", "message": "Unknown error"},
        ])))

        assert response.status_code == 200


class TestPartialFailure:

    def test_store_failure_still_acknowledged(self, client, monkeypatch):
        import wa_ingest.ingest as ingest

        real_insert = ingest.insert_incoming

        def flaky_insert(db, event):
            if event.wa_message_id == "wamid.BAD":
                raise StorageError("database is unavailable")
            return real_insert(db, event)

        monkeypatch.setattr(ingest, "insert_incoming", flaky_insert)

        response = post_webhook(client, notification(change_value(
            messages=[
                text_message("1555", "wamid.BAD", "lost"),
                text_message("1555", "wamid.OK", "kept"),
            ],
            statuses=[status("wamid.OK", "delivered")],
        )))

        assert response.status_code == 200
        stored = query(Message)
        assert [m.wa_message_id for m in stored] == ["wamid.OK"]
        assert stored[0].status == "delivered"

    def test_out_of_range_timestamp_does_not_block_batch(self, client):
        response = post_webhook(client, notification(change_value(messages=[
            text_message("1555", "wamid.BAD", "far future", timestamp="99999999999999999999"),
            text_message("1555", "wamid.OK", "kept"),
        ])))

        assert response.status_code == 200
        assert [m.wa_message_id for m in query(Message)] == ["wamid.OK"]

    def test_status_with_broken_conversation_still_applied(self, client):
        post_webhook(client, notification(change_value(messages=[text_message("1555", "wamid.A", "hi")])))

        response = post_webhook(client, notification(change_value(statuses=[
            status("wamid.A", "delivered", conversation={"id": "CONV1"}),
        ])))

        assert response.status_code == 200
        assert query(Message)[0].status == "delivered"
        assert [row.status for row in query(MessageStatusEvent)] == ["delivered"]
        assert query(Conversation) == []

    def test_status_with_null_errors_still_recorded(self, client):
        record = status("wamid.A", "delivered")
        record["errors"] = None

        response = post_webhook(client, notification(change_value(statuses=[record])))

        assert response.status_code == 200
        assert [row.wa_message_id for row in query(MessageStatusEvent)] == ["wamid.A"]

    def test_malformed_item_does_not_block_batch(self, client):
        response = post_webhook(client, notification(change_value(messages=[
            {"id": "wamid.NOFROM", "type": "text", "timestamp": "1700000000"},
            text_message("1555", "wamid.OK", "kept"),
        ])))

        assert response.status_code == 200
        assert [m.wa_message_id for m in query(Message)] == ["wamid.OK"]


class TestObservability:

    def test_request_id_header(self, client):
        response = post_webhook(client, notification(change_value()))

        assert "x-request-id" in response.headers

    def test_inbound_request_id_reused(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "relay-42"})

        assert response.headers["x-request-id"] == "relay-42"

    def test_http_metrics_use_route_template(self, client, api_headers):
        client.get("/data/messages/wamid.ONE", headers=api_headers)
        client.get("/data/messages/wamid.TWO", headers=api_headers)

        text = client.get("/metrics").text

        assert 'path="/data/messages/{wa_message_id}"' in text
        assert "wamid.ONE" not in text

    def test_metrics_exposed(self, client):
        post_webhook(client, notification(change_value(messages=[text_message("1555", "wamid.A", "hi")])))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_events_total" in response.text
