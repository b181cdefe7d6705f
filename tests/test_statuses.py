"""
Tests for the status reconciler.

Tests cover:
- Status overwrite and append-only history
- Reconciliation misses (unknown message ids)
- Conversation window de-duplication
"""

from wa_ingest.events import ConversationWindow, IncomingMessageEvent, StatusUpdateEvent, TextContent
from wa_ingest.messages import insert_incoming, insert_outgoing
from wa_ingest.models import Contact, Conversation, Message, MessageStatusEvent
from wa_ingest.statuses import apply_status


def seed_message(db, message_id="wamid.A", address="1555"):
    message, _ = insert_incoming(db, IncomingMessageEvent(
        wa_message_id=message_id,
        from_address=address,
        kind="text",
        content=TextContent(body="hi"),
        timestamp="2023-11-14T22:13:20Z",
    ))
    return message


def status_event(message_id="wamid.A", value="delivered", timestamp="2023-11-14T22:13:20Z", **kwargs):
    return StatusUpdateEvent(wa_message_id=message_id, status=value, timestamp=timestamp, **kwargs)


def window(conversation_id="CONV1", origin="business_initiated"):
    return ConversationWindow(
        wa_conversation_id=conversation_id,
        origin_type=origin,
        expires_at="2023-11-15T22:13:20Z",
    )


class TestApplyStatus:

    def test_delivered_updates_message(self, db):
        seed_message(db)

        outcome = apply_status(db, status_event())

        assert outcome.matched is True
        assert db.query(Message).one().status == "delivered"
        history = db.query(MessageStatusEvent).all()
        assert len(history) == 1
        assert history[0].status == "delivered"
        assert history[0].timestamp == "2023-11-14T22:13:20Z"

    def test_unknown_message_is_miss(self, db):
        outcome = apply_status(db, status_event(message_id="wamid.ZZZ"))

        assert outcome.matched is False
        assert db.query(Message).count() == 0
        assert db.query(MessageStatusEvent).filter_by(wa_message_id="wamid.ZZZ").count() == 1

    def test_history_is_append_only_including_misses(self, db):
        apply_status(db, status_event(value="sent", timestamp="2023-11-14T22:13:20Z"))
        insert_outgoing(db, "wamid.A", "1555", "text", "hello")
        apply_status(db, status_event(value="delivered", timestamp="2023-11-14T22:13:21Z"))
        apply_status(db, status_event(value="read", timestamp="2023-11-14T22:13:22Z"))

        history = db.query(MessageStatusEvent).order_by(MessageStatusEvent.id).all()
        assert [row.status for row in history] == ["sent", "delivered", "read"]
        assert db.query(Message).one().status == "read"

    def test_latest_value_wins_without_ordering_check(self, db):
        seed_message(db)
        apply_status(db, status_event(value="read"))
        apply_status(db, status_event(value="delivered"))

        assert db.query(Message).one().status == "delivered"

    def test_failed_records_error(self, db):
        seed_message(db)

        apply_status(db, status_event(value="failed", error_code=131026, error_message="Receiver incapable"))

        assert db.query(Message).one().status == "failed"
        row = db.query(MessageStatusEvent).one()
        assert row.error_code == 131026
        assert row.error_message == "Receiver incapable"

    def test_untracked_status_kept_in_history_only(self, db):
        seed_message(db)

        outcome = apply_status(db, status_event(value="deleted"))

        assert outcome.matched is True
        assert db.query(Message).one().status == "received"
        assert db.query(MessageStatusEvent).one().status == "deleted"


class TestConversationWindows:

    def test_duplicate_conversation_id_single_row(self, db):
        seed_message(db)

        first = apply_status(db, status_event(value="sent", conversation=window()))
        second = apply_status(db, status_event(value="delivered", conversation=window()))

        assert first.conversation_recorded is True
        assert second.conversation_recorded is False
        rows = db.query(Conversation).all()
        assert len(rows) == 1
        assert rows[0].origin_type == "business_initiated"
        assert rows[0].started_at == "2023-11-14T22:13:20Z"
        assert rows[0].expires_at == "2023-11-15T22:13:20Z"
        assert rows[0].contact_id == db.query(Contact).one().id

    def test_unknown_message_skips_conversation(self, db):
        outcome = apply_status(db, status_event(message_id="wamid.ZZZ", conversation=window()))

        assert outcome.matched is False
        assert outcome.conversation_recorded is False
        assert db.query(Conversation).count() == 0
        assert db.query(MessageStatusEvent).count() == 1
