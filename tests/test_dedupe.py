"""Tests for the deduplication gate."""

from datetime import datetime, timezone

from helpers import InMemoryStore, ts
from inboxsync.domain.dedupe import DedupGate, build_row, fuzzy_key, select_new
from inboxsync.domain.models import MessageKey
from inboxsync.domain.settings import SyncSettings
from inboxsync.whatsapp.models import AttachmentDescriptor, NormalizedMessage

JID = "5511988887777@s.whatsapp.net"


def _msg(external_id, content, at, **kwargs):
    return NormalizedMessage(
        external_id=external_id,
        content=content,
        timestamp=ts(at),
        from_me=kwargs.pop("from_me", False),
        sender_type=kwargs.pop("sender_type", "user"),
        remote_jid=JID,
        message_type="conversation",
        **kwargs,
    )


def _select(candidates, existing):
    return select_new(candidates, existing, prefix_len=30, bucket_seconds=10)


class TestFuzzyKey:
    def test_prefix_and_bucket(self):
        at = datetime(2024, 3, 1, 12, 0, 7, tzinfo=timezone.utc)
        key = fuzzy_key("  " + "x" * 40, at, prefix_len=30, bucket_seconds=10)
        assert key == ("x" * 30, int(at.timestamp()) // 10)


class TestSelectNew:
    def test_known_id_excluded_even_if_content_changed(self):
        existing = [MessageKey("ID1", "original text", ts(0))]
        selection = _select([_msg("ID1", "edited text entirely different", 500)], existing)

        assert selection.new == []
        assert selection.by_id == 1

    def test_distinct_content_same_bucket_never_fuzzy_matched(self):
        existing = [MessageKey(None, "see you tomorrow", ts(1))]
        selection = _select([_msg("NEW", "see you at noon", 2)], existing)

        assert len(selection.new) == 1
        assert selection.by_fuzzy == 0

    def test_same_content_same_bucket_other_id_is_duplicate(self):
        existing = [MessageKey("3EB0AAA", "Quero reservar para amanhã", ts(1))]
        selection = _select([_msg("BAE5BBB", "Quero reservar para amanhã", 3)], existing)

        assert selection.new == []
        assert selection.by_fuzzy == 1

    def test_same_content_other_bucket_is_new(self):
        existing = [MessageKey(None, "ok", ts(0))]
        selection = _select([_msg("X", "ok", 3600)], existing)
        assert len(selection.new) == 1

    def test_in_batch_duplicates(self):
        selection = _select([_msg("A", "hello", 0), _msg("A", "hello", 0), _msg("B", "hello", 1)], [])

        assert [m.external_id for m in selection.new] == ["A"]
        assert selection.by_id == 1
        assert selection.by_fuzzy == 1

    def test_no_id_messages_deduped_by_fuzzy(self):
        selection = _select([_msg(None, "[Audio]", 0)], [MessageKey(None, "[Audio]", ts(2))])
        assert selection.by_fuzzy == 1

    def test_shared_long_prefix_distinct_messages_both_kept(self):
        double = "Olá, gostaria de saber o preço do quarto duplo"
        triple = "Olá, gostaria de saber o preço do quarto triplo"
        assert fuzzy_key(double, ts(60), prefix_len=30, bucket_seconds=10) == fuzzy_key(
            triple, ts(61), prefix_len=30, bucket_seconds=10
        )

        selection = _select([_msg("ID-A", double, 60), _msg("ID-B", triple, 61)], [])

        assert [m.content for m in selection.new] == [double, triple]
        assert selection.by_fuzzy == 0

    def test_shared_long_prefix_against_stored_row(self):
        existing = [MessageKey(None, "Olá, gostaria de saber o preço do quarto duplo", ts(60))]
        selection = _select([_msg("ID-B", "Olá, gostaria de saber o preço do quarto triplo", 61)], existing)
        assert len(selection.new) == 1

    def test_same_family_distinct_ids_never_fuzzy_matched(self):
        burst = [_msg(f"IMG{i}", "[Image]", 60, id_source="messageKey") for i in range(3)]

        selection = _select(burst, [])

        assert [m.external_id for m in selection.new] == ["IMG0", "IMG1", "IMG2"]
        assert selection.by_fuzzy == 0

    def test_same_family_stored_row_not_fuzzy_matched(self):
        existing = [MessageKey("S1", "ok", ts(60), id_source="messageKey")]
        selection = _select([_msg("S2", "ok", 61, id_source="messageKey")], existing)
        assert len(selection.new) == 1

    def test_other_family_same_content_is_duplicate(self):
        existing = [MessageKey("3EB0AAA", "Quero reservar", ts(1), id_source="messageKey")]
        selection = _select([_msg("legacy-77", "Quero reservar", 3, id_source="legacyFetch")], existing)

        assert selection.new == []
        assert selection.by_fuzzy == 1

    def test_known_ids_apply_without_rows(self):
        selection = select_new(
            [_msg("A1", "hello", 5000)], [], prefix_len=30, bucket_seconds=10, known_ids={"A1"}
        )
        assert selection.by_id == 1

    def test_fuzzy_disabled(self):
        existing = [MessageKey(None, "ok", ts(60))]
        selection = select_new([_msg("S1", "ok", 61)], existing, prefix_len=30, bucket_seconds=10, fuzzy=False)
        assert len(selection.new) == 1


class TestBuildRow:
    def test_metadata(self):
        message = _msg(
            "ID1",
            "[Image] look",
            0,
            media=AttachmentDescriptor(type="image", mimetype="image/jpeg"),
            push_name="Maria",
        )
        row = build_row("conv-1", message, source="sync:run1")

        assert row.external_id == "ID1"
        assert row.metadata["messageId"] == "ID1"
        assert row.metadata["remoteJid"] == JID
        assert row.metadata["fromMe"] is False
        assert row.metadata["importSource"] == "sync:run1"
        assert row.metadata["attachment"] == {"type": "image", "hasMedia": True, "mimeType": "image/jpeg"}
        assert row.metadata["pushName"] == "Maria"
        assert "importedAt" in row.metadata
        assert row.created_at == ts(0)

    def test_without_external_id(self):
        row = build_row("conv-1", _msg(None, "hi", 0), source="sync")
        assert "external_id" not in row.metadata
        assert row.external_id is None

    def test_id_source_recorded(self):
        row = build_row("conv-1", _msg("ID1", "hi", 0, id_source="messageKey"), source="sync")
        assert row.metadata["idSource"] == "messageKey"

    def test_id_source_absent_without_one(self):
        row = build_row("conv-1", _msg("ID1", "hi", 0), source="sync")
        assert "idSource" not in row.metadata


class TestDedupGate:
    def _conversation(self, store):
        contact = store.add_contact(name="Maria", phone="5511988887777", remote_jid=JID)
        return store.add_conversation(contact, remote_jid=JID)

    def test_admit_persists_only_new(self):
        store = InMemoryStore()
        conversation = self._conversation(store)
        store.add_message(conversation, content="old", created_at=ts(0), metadata={"external_id": "OLD"})

        gate = DedupGate(store, SyncSettings())
        result = gate.admit(conversation.id, [_msg("OLD", "old", 0), _msg("NEW", "new", 60)], source="test")

        assert [row.external_id for row in result.inserted] == ["NEW"]
        assert result.duplicates == 1
        assert result.newest == ts(60)
        assert len(store.messages_for(conversation.id)) == 2

    def test_known_id_outside_fuzzy_window(self):
        store = InMemoryStore()
        conversation = self._conversation(store)
        store.add_message(conversation, content="hello", created_at=ts(0), metadata={"messageId": "A1"})
        gate = DedupGate(store, SyncSettings())

        result = gate.admit(conversation.id, [_msg("A1", "hello", 5000)], source="test")

        assert result.inserted == []
        assert result.duplicates == 1
        assert len(store.messages_for(conversation.id)) == 1

    def test_image_burst_same_second_all_persisted(self):
        store = InMemoryStore()
        conversation = self._conversation(store)
        gate = DedupGate(store, SyncSettings())
        burst = [_msg(f"IMG{i}", "[Image]", 60, id_source="messageKey") for i in range(3)]

        result = gate.admit(conversation.id, burst, source="test")
        again = gate.admit(conversation.id, burst, source="test")

        assert len(result.inserted) == 3
        assert len(store.messages_for(conversation.id)) == 3
        assert again.duplicates == 3

    def test_admit_without_fuzzy(self):
        store = InMemoryStore()
        conversation = self._conversation(store)
        store.add_message(conversation, content="ok", created_at=ts(60))
        gate = DedupGate(store, SyncSettings())

        result = gate.admit(conversation.id, [_msg("S1", "ok", 61)], source="send", fuzzy=False)

        assert len(result.inserted) == 1
        assert result.fuzzy_duplicates == 0

    def test_admit_twice_is_idempotent(self):
        store = InMemoryStore()
        conversation = self._conversation(store)
        gate = DedupGate(store, SyncSettings())
        batch = [_msg(f"ID{i}", f"message {i}", i * 30) for i in range(5)]

        first = gate.admit(conversation.id, batch, source="test")
        second = gate.admit(conversation.id, batch, source="test")

        assert len(first.inserted) == 5
        assert second.inserted == []
        assert second.duplicates == 5
        assert second.newest is None

    def test_chunks_and_failed_chunk_does_not_abort(self):
        store = InMemoryStore()
        conversation = self._conversation(store)
        store.fail_insert_calls = {2}
        gate = DedupGate(store, SyncSettings(insert_chunk_size=2))
        batch = [_msg(f"ID{i}", f"message {i}", i * 30) for i in range(5)]

        result = gate.admit(conversation.id, batch, source="test")

        assert store.insert_calls == [2, 2, 1]
        assert len(result.inserted) == 3
        assert result.failed == 2
        assert result.chunk_errors == ["chunk 1: RuntimeError"]

    def test_preview_writes_nothing(self):
        store = InMemoryStore()
        conversation = self._conversation(store)
        gate = DedupGate(store, SyncSettings())

        selection = gate.preview(conversation.id, [_msg("A", "hello", 0)])

        assert len(selection.new) == 1
        assert store.messages_for(conversation.id) == []
        assert store.insert_calls == []

    def test_empty_batch(self):
        store = InMemoryStore()
        gate = DedupGate(store, SyncSettings())
        assert gate.admit("conv-x", [], source="test").inserted == []
        assert gate.preview("conv-x", []).new == []
