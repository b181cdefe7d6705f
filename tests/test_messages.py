"""
Tests for the message store.

Tests cover:
- Inbound inserts per content variant
- Idempotency by wa_message_id (sequential and racing)
- Interactive selections written once
- Outbound inserts
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from wa_ingest.events import (
    IncomingMessageEvent,
    LocationContent,
    MediaContent,
    OutgoingExtras,
    Selection,
    StructuredContent,
    TextContent,
    UnrecognizedContent,
)
from wa_ingest.messages import CONTENT_COLUMNS, content_columns, insert_incoming, insert_outgoing
from wa_ingest.models import Contact, InteractiveSelection, Message
from wa_ingest.storage import SessionLocal


def incoming(message_id="wamid.A", address="1555", kind="text", content=None, **kwargs):
    return IncomingMessageEvent(
        wa_message_id=message_id,
        from_address=address,
        kind=kind,
        content=content if content is not None else TextContent(body="hi"),
        timestamp="2023-11-14T22:13:20Z",
        **kwargs,
    )


class TestContentColumns:
    """Exactly one content group is populated per variant."""

    GROUPS = {
        "text": {"content"},
        "media": {"media_id", "media_mime_type", "media_filename", "caption"},
        "location": {"latitude", "longitude", "location_name", "location_address"},
        "structured": {"content"},
        "unrecognized": {"content"},
    }

    @pytest.mark.parametrize("content", [
        TextContent(body="hi"),
        MediaContent(media_id="M", mime_type="image/png", filename="f.png", caption="c"),
        LocationContent(latitude=1.0, longitude=2.0, name="N", address="A"),
        StructuredContent(data='{"id":"x"}'),
        UnrecognizedContent(raw_snapshot='{"type":"order"}'),
    ])
    def test_only_variant_group_set(self, content):
        columns = content_columns(content)

        assert set(columns) == set(CONTENT_COLUMNS)
        populated = {name for name, value in columns.items() if value is not None}
        assert populated <= self.GROUPS[content.variant]
        assert populated


class TestInsertIncoming:

    def test_text_message_scenario(self, db):
        message, is_duplicate = insert_incoming(db, incoming(profile_name="Alice"))

        assert is_duplicate is False
        assert message.direction == "incoming"
        assert message.type == "text"
        assert message.content == "hi"
        assert message.status == "received"
        assert message.timestamp == "2023-11-14T22:13:20Z"
        assert message.created_at
        assert db.query(Contact).one().wa_id == "1555"

    def test_location_without_name(self, db):
        message, _ = insert_incoming(db, incoming(
            kind="location", content=LocationContent(latitude=1.0, longitude=2.0),
        ))

        assert message.latitude == 1.0
        assert message.longitude == 2.0
        assert message.location_name is None
        assert message.content is None

    def test_duplicate_is_noop(self, db):
        first, _ = insert_incoming(db, incoming())
        second, is_duplicate = insert_incoming(db, incoming(content=TextContent(body="changed")))

        assert is_duplicate is True
        assert second.id == first.id
        assert second.content == "hi"
        assert db.query(Message).count() == 1

    def test_reply_target_is_soft_reference(self, db):
        message, _ = insert_incoming(db, incoming(reply_to_message_id="wamid.NEVER_SEEN"))

        assert message.reply_to_message_id == "wamid.NEVER_SEEN"

    def test_interactive_selection_written_once(self, db):
        event = incoming(
            kind="interactive",
            content=StructuredContent(data='{"id":"yes","title":"Yes"}'),
            selection=Selection(selection_type="button_reply", selection_id="yes", title="Yes"),
        )

        message, _ = insert_incoming(db, event)
        insert_incoming(db, event)

        selections = db.query(InteractiveSelection).all()
        assert len(selections) == 1
        assert selections[0].message_id == message.id
        assert selections[0].title == "Yes"

    def test_selection_ignored_for_other_kinds(self, db):
        insert_incoming(db, incoming(
            selection=Selection(selection_type="button_reply", selection_id="yes", title="Yes"),
        ))

        assert db.query(InteractiveSelection).count() == 0

    def test_racing_duplicates_keep_one_row(self, db):
        def worker(body):
            session = SessionLocal()
            try:
                message, is_duplicate = insert_incoming(session, incoming(content=TextContent(body=body)))
                return message.content, is_duplicate
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(worker, ["first", "second"]))

        stored = db.query(Message).all()
        assert len(stored) == 1
        assert stored[0].content in ("first", "second")
        # Both callers see the winning row's content, never a merge
        assert {content for content, _ in results} == {stored[0].content}
        assert sorted(dup for _, dup in results) == [False, True]


class TestInsertOutgoing:

    def test_outgoing_text(self, db):
        insert_incoming(db, incoming(profile_name="Alice"))

        message, is_duplicate = insert_outgoing(db, "wamid.OUT", "1555", "text", "hello back")

        assert is_duplicate is False
        assert message.direction == "outgoing"
        assert message.status == "sent"
        assert message.content == "hello back"
        # Outbound sends carry no profile data
        assert db.query(Contact).one().name == "Alice"

    def test_outgoing_creates_recipient(self, db):
        insert_outgoing(db, "wamid.OUT", "1999", "text", "hi")

        contact = db.query(Contact).one()
        assert contact.wa_id == "1999"
        assert contact.name is None

    def test_outgoing_media_and_reply(self, db):
        message, _ = insert_outgoing(
            db, "wamid.IMG", "1555", "image",
            extras=OutgoingExtras(media_id="M1", caption="pic", reply_to_message_id="wamid.A"),
        )

        assert message.media_id == "M1"
        assert message.caption == "pic"
        assert message.content is None
        assert message.reply_to_message_id == "wamid.A"

    def test_outgoing_duplicate(self, db):
        insert_outgoing(db, "wamid.OUT", "1555", "text", "one")
        message, is_duplicate = insert_outgoing(db, "wamid.OUT", "1555", "text", "two")

        assert is_duplicate is True
        assert message.content == "one"
        assert db.query(Message).count() == 1
