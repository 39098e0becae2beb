"""Tests for the grouped presentation view."""

from datetime import date, datetime, timedelta, timezone

import pytest

from chatsync.models import (
    Attachment,
    AttachmentStatus,
    FileKind,
    Message,
    MessageState,
)
from chatsync.sync import MessageStore, date_label, group_by_date

TODAY = date(2025, 3, 12)


def _message(id, sender_id, content, created_at, admin_sender_id=None, attachments=None):
    return Message(
        id=id,
        conversation_id="conv-1",
        sender_id=sender_id,
        admin_sender_id=admin_sender_id,
        content=content,
        created_at=created_at,
        attachments=attachments or [],
    )


def _at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


class TestDateLabel:
    """Tests for date_label()."""

    @pytest.mark.parametrize(
        "day,expected",
        [
            (TODAY, "Hoje"),
            (TODAY - timedelta(days=1), "Ontem"),
            (date(2025, 1, 5), "05 de janeiro"),
            (date(2024, 3, 20), "20 de março"),
        ],
    )
    def test_labels(self, day, expected):
        assert date_label(day, TODAY) == expected


class TestGroupByDate:
    """Tests for group_by_date()."""

    def _store(self) -> MessageStore:
        store = MessageStore("conv-1")
        yesterday = TODAY - timedelta(days=1)
        store.bulk_load(
            [
                _message("m1", "staff-2", "Bom dia", _at(yesterday, 9, 5)),
                _message("m2", "staff-1", "Bom dia!", _at(yesterday, 9, 7)),
                _message("m3", None, "Documento recebido", _at(TODAY, 14, 30), admin_sender_id="admin-1"),
            ]
        )
        return store

    def test_sections_follow_store_order(self):
        sections = group_by_date(self._store().entries(), "staff-1", today=TODAY)

        assert [s.label for s in sections] == ["Ontem", "Hoje"]
        assert [len(s.items) for s in sections] == [2, 1]
        assert sections[0].items[0].time == "09:05"

    def test_sender_labels(self):
        """Test own, named and support senders."""
        sections = group_by_date(
            self._store().entries(), "staff-1", names={"staff-2": "Bruno"}, today=TODAY
        )
        first, own = sections[0].items
        support = sections[1].items[0]

        assert first.is_own is False
        assert first.sender_label == "Bruno"
        assert own.is_own is True
        assert own.sender_label is None
        assert support.sender_label == "Suporte"

    def test_time_zone_moves_day(self):
        """Test that days are computed in the requested zone."""
        store = MessageStore("conv-1")
        store.bulk_load([_message("m1", "staff-2", "Tarde", _at(TODAY, 1, 30))])

        sections = group_by_date(
            store.entries(), "staff-1", today=TODAY, tz=timezone(timedelta(hours=-3))
        )

        assert sections[0].label == "Ontem"
        assert sections[0].items[0].time == "22:30"

    def test_optimistic_item_has_no_message_id(self):
        store = MessageStore("conv-1")
        token = store.apply_optimistic(
            _message("local", "staff-1", "Enviando", _at(TODAY, 10))
        )

        item = group_by_date(store.entries(), "staff-1", today=TODAY)[0].items[0]

        assert item.token == token
        assert item.message_id is None
        assert item.state == MessageState.OPTIMISTIC

    def test_attachment_badges(self):
        rejected = Attachment(
            id="att-1",
            conversation_id="conv-1",
            sender_id="staff-1",
            file_name="laudo.pdf",
            file_kind=FileKind.PDF,
            file_path="org-1/conv-1/laudo.pdf",
            file_size=1536,
            status=AttachmentStatus.REJECTED,
            message_id="m1",
            rejected_reason="Ilegível",
        )
        store = MessageStore("conv-1")
        store.bulk_load(
            [_message("m1", "staff-1", "Segue", _at(TODAY, 8), attachments=[rejected])]
        )

        badge = group_by_date(store.entries(), "staff-1", today=TODAY)[0].items[0].attachments[0]

        assert badge.label == "Rejeitado"
        assert badge.rejected_reason == "Ilegível"
        assert badge.size_label == "1.5 KB"

    def test_empty(self):
        assert group_by_date([], "staff-1", today=TODAY) == []
