"""Tests for the in-memory account store and its JSON snapshot."""

import threading
from dataclasses import replace
from datetime import date

import pytest

from accountkit.storage.errors import ConstraintViolation
from accountkit.storage.memory import MemoryStore
from accountkit.storage.models import Account, Session


def _account(username="alice", email="a@x.com"):
    return Account.new(
        name="Alice",
        username=username,
        email=email,
        password_hash="$argon2id$digest",
        date_of_birth=date(1990, 5, 17),
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestAccounts:
    """Account uniqueness and lookup."""

    def test_duplicate_username_and_email(self, store):
        store.create_account(_account())

        with pytest.raises(ConstraintViolation) as dup_user:
            store.create_account(_account(email="b@x.com"))
        with pytest.raises(ConstraintViolation) as dup_email:
            store.create_account(_account(username="bob"))
        assert dup_user.value.field == "username"
        assert dup_email.value.field == "email"

    def test_find_account_matches_either_key(self, store):
        created = store.create_account(_account())
        assert store.find_account(username="alice").id == created.id
        assert store.find_account(email="a@x.com").id == created.id
        assert store.find_account(username="Alice") is None

    def test_replace_account_follows_rename(self, store):
        account = store.create_account(_account())
        store.create_session(Session.new("alice", "refresh-1", "jti-1"))

        updated = store.replace_account(replace(account, username="alice2"))
        assert updated.updated_at is not None
        assert store.get_account_by_username("alice") is None
        assert store.get_session_by_jti("jti-1").username == "alice2"

    def test_replace_missing_account(self, store):
        with pytest.raises(ConstraintViolation):
            store.replace_account(_account())

    def test_delete_account_cascades_sessions(self, store):
        store.create_account(_account())
        store.create_account(_account(username="bob", email="b@x.com"))
        store.create_session(Session.new("alice", "r1", "j1"))
        store.create_session(Session.new("alice", "r2", "j2"))
        store.create_session(Session.new("bob", "r3", "j3"))

        assert store.delete_account("alice") is True
        assert store.list_user_sessions("alice") == []
        assert len(store.list_user_sessions("bob")) == 1
        assert store.delete_account("alice") is False

    def test_concurrent_creates_admit_one(self, store):
        errors = []
        barrier = threading.Barrier(10)

        def worker(i):
            barrier.wait()
            try:
                store.create_account(_account(email=f"user{i}@x.com"))
            except ConstraintViolation as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.accounts) == 1
        assert len(errors) == 9


class TestSessions:
    """Session bookkeeping."""

    def test_refresh_token_is_unique(self, store):
        store.create_session(Session.new("alice", "same", "j1"))
        with pytest.raises(ConstraintViolation):
            store.create_session(Session.new("alice", "same", "j2"))

    def test_delete_session_reports_removal(self, store):
        session = store.create_session(Session.new("alice", "r1", "j1"))
        assert store.delete_session(session.id) is True
        assert store.delete_session(session.id) is False

    def test_delete_user_sessions_counts(self, store):
        store.create_session(Session.new("alice", "r1", "j1"))
        store.create_session(Session.new("alice", "r2", "j2"))
        assert store.delete_user_sessions("alice") == 2
        assert store.delete_user_sessions("alice") == 0


class TestPersistence:
    """The JSON snapshot survives a restart."""

    def test_state_reloads(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        account = store.create_account(_account())
        store.create_session(Session.new("alice", "r1", "j1"))

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.get_account(account.id)
        assert restored == account
        assert reloaded.get_session_by_refresh_token("r1").jti == "j1"

    def test_corrupt_snapshot_starts_empty(self, tmp_path):
        state_dir = tmp_path / "state"
        state_dir.mkdir()
        (state_dir / "account_store.json").write_text("{broken")

        store = MemoryStore(fs_root=str(tmp_path))
        assert store.accounts == {}

    def test_failed_write_leaves_state_unchanged(self, store, monkeypatch):
        account = store.create_account(_account())
        store.create_session(Session.new("alice", "r1", "j1"))

        def failing_persist(*args, **kwargs):
            raise RuntimeError("failed to persist in-memory state: disk full")

        monkeypatch.setattr(store, "_persist_state", failing_persist)
        with pytest.raises(RuntimeError):
            store.create_account(_account(username="bob", email="b@x.com"))
        with pytest.raises(RuntimeError):
            store.replace_account(replace(account, username="alice2"))
        with pytest.raises(RuntimeError):
            store.delete_account("alice")
        with pytest.raises(RuntimeError):
            store.delete_user_sessions("alice")

        assert list(store.accounts) == [account.id]
        assert store.get_account_by_username("alice") == account
        assert store.get_session_by_jti("j1").username == "alice"
