"""Tests for PgSyncStore.insert_messages_if_absent() with a mocked transaction."""

from contextlib import contextmanager
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2
from psycopg2 import errors as pg_errors

from inboxsync.domain.models import NewMessage
from inboxsync.infra.pg_store import PgSyncStore

AT = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _rows(n):
    return [NewMessage("v1", "user", f"message {i}", AT, {"external_id": f"E{i}"}) for i in range(n)]


@contextmanager
def _fake_txn(conn=None):
    yield MagicMock()


class TestInsertMessagesIfAbsent:
    def test_counts_inserted_and_duplicates(self):
        with patch("inboxsync.infra.pg_store.txn", _fake_txn), patch(
            "inboxsync.infra.pg_store.messages_repository.insert_if_absent", side_effect=["m1", None, "m3"]
        ):
            outcome = PgSyncStore().insert_messages_if_absent(_rows(3))

        assert [r.external_id for r in outcome.inserted] == ["E0", "E2"]
        assert outcome.duplicates == 1
        assert outcome.failed == 0

    def test_unique_violation_is_duplicate(self):
        with patch("inboxsync.infra.pg_store.txn", _fake_txn), patch(
            "inboxsync.infra.pg_store.messages_repository.insert_if_absent",
            side_effect=[pg_errors.UniqueViolation("dup"), "m2"],
        ):
            outcome = PgSyncStore().insert_messages_if_absent(_rows(2))

        assert outcome.duplicates == 1
        assert len(outcome.inserted) == 1

    def test_bad_row_does_not_abort_chunk(self):
        with patch("inboxsync.infra.pg_store.txn", _fake_txn), patch(
            "inboxsync.infra.pg_store.messages_repository.insert_if_absent",
            side_effect=["m1", psycopg2.DataError("bad timestamp"), "m3"],
        ):
            outcome = PgSyncStore().insert_messages_if_absent(_rows(3))

        assert outcome.failed == 1
        assert [r.external_id for r in outcome.inserted] == ["E0", "E2"]

    def test_each_row_under_savepoint(self):
        cur = MagicMock()

        @contextmanager
        def txn(conn=None):
            yield cur

        with patch("inboxsync.infra.pg_store.txn", txn), patch(
            "inboxsync.infra.pg_store.messages_repository.insert_if_absent", return_value="m1"
        ):
            PgSyncStore().insert_messages_if_absent(_rows(2))

        statements = [c[0][0] for c in cur.execute.call_args_list]
        assert statements == ["SAVEPOINT row", "RELEASE SAVEPOINT row"] * 2

    def test_uses_given_connection(self):
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value.fetchone.return_value = ("i1", "co1", "inst-1")

        instance = PgSyncStore(conn).get_instance("inst-1")

        assert instance.company_id == "co1"
        conn.commit.assert_called_once()
        conn.close.assert_not_called()
