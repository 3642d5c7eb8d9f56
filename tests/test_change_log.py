"""Tests for the change log store and sync database."""

import pytest

from gradesync.sync import ChangeLogEntry, ChangeLogStore, StoreError, SyncDatabase


@pytest.fixture
def db():
    """Create an in-memory sync database."""
    database = SyncDatabase(":memory:")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def change_log(db):
    return ChangeLogStore(db)


def _entry(ts, record_id, change_type="upsert"):
    return ChangeLogEntry(ts=ts, id=record_id, type=change_type, client_id="c1", version=1)


class TestSyncDatabase:
    """Tests for schema and transactions."""

    def test_connect_creates_tables(self, db):
        """Test that connect() creates the records and change_log tables."""
        with db.read() as conn:
            tables = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        table_names = [t[0] for t in tables]

        assert "records" in table_names
        assert "change_log" in table_names

    def test_transaction_rolls_back_on_error(self, db, change_log):
        """Test a failing transaction leaves no partial writes."""
        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                change_log.append([_entry(1, "S1")], conn=conn)
                raise RuntimeError("boom")

        assert change_log.get_checkpoint() is None

    def test_sqlite_errors_become_store_errors(self, db):
        """Test SQLite failures surface as StoreError."""
        with pytest.raises(StoreError):
            with db.read() as conn:
                conn.execute("SELECT * FROM missing_table")

    def test_integer_overflow_becomes_store_error(self, db):
        """Test binding an integer wider than 64 bits surfaces as StoreError."""
        with pytest.raises(StoreError):
            with db.read() as conn:
                conn.execute("SELECT ?", (2**64,))

        with pytest.raises(StoreError):
            with db.transaction() as conn:
                conn.execute(
                    "INSERT INTO change_log (ts, id, type, created_at) "
                    "VALUES (?, 'S1', 'upsert', 'now')",
                    (2**64,),
                )

        with db.read() as conn:
            assert conn.execute("SELECT COUNT(*) FROM change_log").fetchone()[0] == 0


    def test_file_database(self, tmp_path):
        """Test a file-backed database creates its directory."""
        database = SyncDatabase(tmp_path / "nested" / "server.db")
        database.connect()

        assert (tmp_path / "nested" / "server.db").exists()
        assert database.size_mb() is not None
        database.close()


class TestChangeLogAppend:
    """Tests for appending entries."""

    def test_append_assigns_seq(self, change_log):
        """Test appended entries get increasing seq numbers."""
        entries = change_log.append([_entry(10, "A"), _entry(10, "B")])

        assert entries[0].seq < entries[1].seq

    def test_append_empty(self, change_log):
        assert change_log.append([]) == []

    def test_append_keeps_every_version(self, change_log):
        """Test the log is append-only: versions are never overwritten."""
        change_log.append([_entry(1, "A")])
        change_log.append([_entry(2, "A")])

        history = change_log.get_history("A")

        assert [e.ts for e in history] == [1, 2]


class TestChangeLogQuery:
    """Tests for querying entries."""

    def test_query_since_is_exclusive(self, change_log):
        """Test only entries with ts > since are returned."""
        change_log.append([_entry(1, "A"), _entry(2, "B"), _entry(3, "C")])

        entries = change_log.query(since=1, limit=100)

        assert {e.id for e in entries} == {"B", "C"}

    def test_query_newest_first(self, change_log):
        change_log.append([_entry(1, "A"), _entry(3, "C"), _entry(2, "B")])

        entries = change_log.query(since=0, limit=100)

        assert [e.ts for e in entries] == [3, 2, 1]

    def test_query_one_entry_per_id(self, change_log):
        """Test only the newest entry for each id is returned."""
        change_log.append([_entry(1, "A"), _entry(5, "A", "delete"), _entry(3, "A")])

        entries = change_log.query(since=0, limit=100)

        assert len(entries) == 1
        assert entries[0].ts == 5
        assert entries[0].type == "delete"

    def test_query_equal_ts_later_arrival_wins(self, change_log):
        """Test equal timestamps tie-break by arrival order."""
        change_log.append([_entry(5, "A", "upsert")])
        change_log.append([_entry(5, "A", "delete")])

        entries = change_log.query(since=0, limit=100)

        assert entries[0].type == "delete"

    def test_query_limit(self, change_log):
        change_log.append([_entry(i, f"S{i}") for i in range(1, 11)])

        entries = change_log.query(since=0, limit=3)

        assert [e.ts for e in entries] == [10, 9, 8]


class TestCheckpoint:
    """Tests for checkpoint tracking."""

    def test_empty_log_has_no_checkpoint(self, change_log):
        assert change_log.get_checkpoint() is None

    def test_checkpoint_is_max_ts(self, change_log):
        """Test the checkpoint is the highest ts regardless of order."""
        change_log.append([_entry(300, "A"), _entry(100, "B"), _entry(200, "C")])

        assert change_log.get_checkpoint() == 300


class TestChangeLogStats:
    def test_get_stats(self, change_log):
        """Test statistics by type and id."""
        change_log.append(
            [_entry(1, "A"), _entry(2, "A"), _entry(3, "B", "delete")]
        )

        stats = change_log.get_stats()

        assert stats["total_entries"] == 3
        assert stats["distinct_ids"] == 2
        assert stats["entries_by_type"] == {"upsert": 2, "delete": 1}
