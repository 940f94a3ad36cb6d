"""
Tests for the storage layer and the post pipeline transaction.

Tests cover:
- Identity creation, reuse and rename
- Recovery from a lost identity insert race
- Message append ordering and read helpers
- Limit clamping
- All-or-nothing post transaction
- Concurrent posts from many sessions
"""

import threading

import pytest
from sqlalchemy.exc import IntegrityError

from chatroom import storage
from chatroom.errors import ChatError, InvalidInput, ServerError
from chatroom.models import Identity, Message
from chatroom.pipeline import submit, validate_post
from chatroom.schemas import SendRequest
from chatroom.sessions import SessionGuard, SessionRecord


def make_request(record: SessionRecord, name: str = "Alice", email: str = "alice@mail.org",
                 content: str = "Hello") -> SendRequest:
    return SendRequest(csrf=record.csrf_token, name=name, email=email, content=content)


@pytest.fixture
def record():
    return SessionRecord(session_id="test-session")


@pytest.fixture
def guard():
    return SessionGuard(min_interval=0)


class TestResolveIdentity:
    """Test the identity resolver."""

    def test_creates_identity(self, db):
        """Test a novel email creates a new identity."""
        identity_id = storage.resolve_identity(db, "Alice", "alice@mail.org")
        db.commit()

        identity = db.get(Identity, identity_id)
        assert identity.name == "Alice"
        assert identity.email == "alice@mail.org"
        assert identity.created_at.endswith("Z")

    def test_same_email_same_id(self, db):
        """Test the email to id mapping is stable."""
        first = storage.resolve_identity(db, "Alice", "alice@mail.org")
        second = storage.resolve_identity(db, "Alice", "alice@mail.org")
        db.commit()

        assert first == second
        assert db.query(Identity).count() == 1

    def test_rename_keeps_identity(self, db):
        """Test a different name updates the stored name in place."""
        first = storage.resolve_identity(db, "Alice", "alice@mail.org")
        second = storage.resolve_identity(db, "Alicia", "alice@mail.org")
        db.commit()

        assert first == second
        assert db.get(Identity, first).name == "Alicia"

    def test_email_match_ignores_case(self, db):
        """Test differently cased spellings of one address share an identity."""
        first = storage.resolve_identity(db, "Alice", "alice@mail.org")
        second = storage.resolve_identity(db, "Alice", "Alice@Mail.ORG")
        db.commit()

        assert first == second
        assert db.query(Identity).count() == 1
        assert db.get(Identity, first).email == "alice@mail.org"

    def test_unique_index_ignores_case(self, db):
        """Test the store itself rejects a second row differing only in case."""
        db.add(Identity(name="A", email="bob@mail.org", created_at="2025-01-01T00:00:00Z"))
        db.commit()

        db.add(Identity(name="B", email="BOB@mail.org", created_at="2025-01-01T00:00:00Z"))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_lost_insert_race_retries_as_lookup(self, db, monkeypatch):
        """Test a unique violation on insert converges on the existing row."""
        with storage.SessionLocal() as other:
            winner_id = storage.resolve_identity(other, "Alice", "alice@mail.org")
            other.commit()

        real_find = storage.find_identity_by_email
        calls = []

        def stale_find(db_session, email):
            calls.append(email)
            # First lookup runs before the concurrent writer's row is visible
            if len(calls) == 1:
                return None
            return real_find(db_session, email)

        monkeypatch.setattr(storage, "find_identity_by_email", stale_find)

        identity_id = storage.resolve_identity(db, "Ally", "alice@mail.org")
        message_id = storage.append_message(db, identity_id, "after the race")
        db.commit()

        assert identity_id == winner_id
        assert len(calls) == 2
        assert db.query(Identity).count() == 1
        assert db.get(Identity, winner_id).name == "Ally"
        assert db.get(Message, message_id).identity_id == winner_id


class TestMessageStore:
    """Test append and read helpers."""

    def test_append_assigns_increasing_ids(self, db):
        """Test ids grow with insertion order."""
        identity_id = storage.resolve_identity(db, "Alice", "alice@mail.org")
        ids = [storage.append_message(db, identity_id, f"m{i}") for i in range(5)]
        db.commit()

        assert ids == sorted(ids)
        assert len(set(ids)) == 5

    def test_ids_not_reused_after_delete(self, db):
        """Test a deleted tail id is never handed out again."""
        identity_id = storage.resolve_identity(db, "Alice", "alice@mail.org")
        first = storage.append_message(db, identity_id, "one")
        db.commit()

        db.delete(db.get(Message, first))
        db.commit()

        second = storage.append_message(db, identity_id, "two")
        db.commit()

        assert second > first

    def test_read_after(self, db):
        """Test read_after returns ids above the watermark, ascending, capped."""
        identity_id = storage.resolve_identity(db, "Alice", "alice@mail.org")
        ids = [storage.append_message(db, identity_id, f"m{i}") for i in range(10)]
        db.commit()

        result = storage.read_after(db, ids[3], limit=4)

        assert [m.id for m in result] == ids[4:8]
        assert result[0].content == "m4"
        assert result[0].name == "Alice"

    def test_read_latest(self, db):
        """Test read_latest returns the newest window in ascending order."""
        identity_id = storage.resolve_identity(db, "Alice", "alice@mail.org")
        ids = [storage.append_message(db, identity_id, f"m{i}") for i in range(10)]
        db.commit()

        result = storage.read_latest(db, limit=3)

        assert [m.id for m in result] == ids[-3:]

    def test_read_empty(self, db):
        """Test reads on an empty log return empty lists."""
        assert storage.read_after(db, 0) == []
        assert storage.read_latest(db) == []

    def test_identity_delete_cascades(self, db):
        """Test removing an identity removes its messages."""
        identity_id = storage.resolve_identity(db, "Alice", "alice@mail.org")
        storage.append_message(db, identity_id, "bye")
        db.commit()

        db.delete(db.get(Identity, identity_id))
        db.commit()

        assert db.query(Message).count() == 0

    @pytest.mark.parametrize("limit,expected", [
        (None, 100), (0, 100), (-3, 100), (1, 1), (150, 150), (200, 200), (201, 100), (500, 100),
    ])
    def test_clamp_limit(self, limit, expected):
        """Test limits outside 1..200 fall back to 100."""
        assert storage.clamp_limit(limit) == expected


class TestValidatePost:
    """Test field validation outside the HTTP layer."""

    def test_trims_fields(self, record):
        post = validate_post(make_request(record, name=" Al ", email=" al@mail.org ", content=" hi "))

        assert (post.name, post.email, post.content) == ("Al", "al@mail.org", "hi")

    def test_reports_first_bad_field(self, record):
        with pytest.raises(InvalidInput) as exc_info:
            validate_post(make_request(record, name="", content=""))

        assert exc_info.value.field == "name"
        assert exc_info.value.reason == "is required"


class TestSubmitTransaction:
    """Test the post pipeline commits all or nothing."""

    def test_submit_persists_identity_and_message(self, db, record, guard):
        """Test a successful submit commits both rows."""
        message_id = submit(db, record, guard, make_request(record), "10.0.0.1")

        message = db.get(Message, message_id)
        assert message.content == "Hello"
        assert message.client_address == "10.0.0.1"
        assert message.identity.email == "alice@mail.org"

    def test_failed_append_rolls_back_new_identity(self, db, record, guard, monkeypatch):
        """Test no identity survives when the message insert fails."""
        def broken_append(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(storage, "append_message", broken_append)

        with pytest.raises(ServerError) as exc_info:
            submit(db, record, guard, make_request(record))

        assert exc_info.value.message == "Server error"
        with storage.SessionLocal() as check:
            assert check.query(Identity).count() == 0
            assert check.query(Message).count() == 0

    def test_failed_append_rolls_back_rename(self, db, record, guard, monkeypatch):
        """Test a rename is not persisted without its message."""
        submit(db, record, guard, make_request(record, name="Alice"))

        def broken_append(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(storage, "append_message", broken_append)

        with pytest.raises(ServerError):
            submit(db, record, guard, make_request(record, name="Mallory"))

        with storage.SessionLocal() as check:
            assert check.query(Identity).one().name == "Alice"
            assert check.query(Message).count() == 1


class TestConcurrentSubmit:
    """Test many sessions posting at the same moment."""

    THREADS = 8

    def _run_concurrently(self, emails):
        """Submit one post per email from its own thread, session and record."""
        barrier = threading.Barrier(len(emails))
        guard = SessionGuard(min_interval=0)
        ids = []
        errors = []
        lock = threading.Lock()

        def post(email):
            record = SessionRecord(session_id=f"session-{email}")
            request = make_request(record, name="Racer", email=email, content=f"from {email}")
            with storage.SessionLocal() as session:
                barrier.wait()
                try:
                    message_id = submit(session, record, guard, request)
                except ChatError as e:
                    with lock:
                        errors.append(e)
                else:
                    with lock:
                        ids.append(message_id)

        threads = [threading.Thread(target=post, args=(email,)) for email in emails]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return ids, errors

    def test_distinct_authors_all_stored(self, db_tables):
        """Test simultaneous posts from different authors all succeed."""
        emails = [f"user{i}@mail.org" for i in range(self.THREADS)]

        ids, errors = self._run_concurrently(emails)

        assert errors == []
        assert len(set(ids)) == self.THREADS
        with storage.SessionLocal() as check:
            assert check.query(Identity).count() == self.THREADS
            assert check.query(Message).count() == self.THREADS

    def test_same_new_email_converges_on_one_identity(self, db_tables):
        """Test simultaneous first posts under one email create one identity."""
        emails = ["shared@mail.org"] * self.THREADS

        ids, errors = self._run_concurrently(emails)

        assert errors == []
        assert len(set(ids)) == self.THREADS
        with storage.SessionLocal() as check:
            assert check.query(Identity).count() == 1
            assert check.query(Message).count() == self.THREADS
            identity_ids = {m.identity_id for m in check.query(Message).all()}
            assert len(identity_ids) == 1

    def test_ids_follow_commit_order(self, db_tables):
        """Test concurrently assigned ids are unique and readable in order."""
        emails = [f"user{i}@mail.org" for i in range(self.THREADS)]

        ids, _ = self._run_concurrently(emails)

        with storage.SessionLocal() as check:
            fetched = [m.id for m in storage.read_after(check, 0, limit=200)]
        assert fetched == sorted(ids)
