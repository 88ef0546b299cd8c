"""Unit tests for the JSON-backed memory store.

Tests for:
- User CRUD and settings
- Session token rows
- Task CRUD, search and count
- Snapshot reload and write failures
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from daytick.storage.errors import ConstraintViolation, PersistenceError
from daytick.storage.memory import MemoryStore
from daytick.storage.models import AuthToken, TaskFilter


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def test_user(memory_store):
    return memory_store.create_user("test@example.com")


def _token_for(user_id: int, *, expires_in: timedelta = timedelta(days=1)) -> AuthToken:
    return AuthToken.new(user_id, expires_in)


class TestUsers:
    def test_create_user_normalizes_email(self, memory_store):
        user = memory_store.create_user("  Mixed@Example.COM ")
        assert user.email == "mixed@example.com"
        assert memory_store.get_user_by_email("MIXED@example.com").id == user.id

    def test_ids_increase(self, memory_store):
        first = memory_store.create_user("a@example.com")
        second = memory_store.create_user("b@example.com")
        assert second.id == first.id + 1

    def test_duplicate_email_rejected(self, memory_store, test_user):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("TEST@example.com")
        assert excinfo.value.detail == {"field": "email"}

    def test_settings_defaults_and_update(self, memory_store, test_user):
        assert test_user.start_of_week == 1
        assert test_user.rollover_time == "00:00"

        updated = memory_store.update_user_settings(test_user.id, start_of_week=7)

        assert updated.start_of_week == 7
        assert updated.rollover_time == "00:00"

    def test_update_settings_for_missing_user(self, memory_store):
        assert memory_store.update_user_settings(999, start_of_week=2) is None

    def test_password_record_round_trip(self, memory_store, test_user):
        memory_store.save_password(test_user.id, "hash", "argon2id")
        assert memory_store.get_password_record(test_user.id) == ("hash", "argon2id")

    def test_password_for_missing_user_rejected(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.save_password(404, "hash", "argon2id")

    def test_delete_user_cascades(self, memory_store, test_user):
        other = memory_store.create_user("other@example.com")
        memory_store.save_password(test_user.id, "hash", "argon2id")
        memory_store.insert_token(_token_for(test_user.id))
        kept_token = _token_for(other.id)
        memory_store.insert_token(kept_token)
        memory_store.create_task(test_user.id, "gone", "2024-01-01")
        kept_task = memory_store.create_task(other.id, "kept", "2024-01-01")

        assert memory_store.delete_user(test_user.id) is True

        assert memory_store.get_user(test_user.id) is None
        assert memory_store.get_password_record(test_user.id) is None
        assert list(memory_store.tokens) == [kept_token.value]
        assert list(memory_store.tasks) == [kept_task.id]
        assert memory_store.delete_user(test_user.id) is False


class TestTokens:
    def test_insert_and_get(self, memory_store, test_user):
        token = _token_for(test_user.id)
        memory_store.insert_token(token)
        assert memory_store.get_token(token.value) == token

    def test_insert_for_missing_user_rejected(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.insert_token(_token_for(12345))

    def test_insert_duplicate_value_rejected(self, memory_store, test_user):
        token = _token_for(test_user.id)
        memory_store.insert_token(token)
        with pytest.raises(ConstraintViolation):
            memory_store.insert_token(token)

    def test_list_expired_uses_inclusive_threshold(self, memory_store, test_user):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        expired = AuthToken("a" * 8 + "-0000-4000-8000-000000000000", test_user.id, now)
        live = AuthToken(
            "b" * 8 + "-0000-4000-8000-000000000000", test_user.id, now + timedelta(seconds=1)
        )
        memory_store.insert_token(expired)
        memory_store.insert_token(live)

        assert [t.value for t in memory_store.list_expired_tokens(now)] == [expired.value]

    def test_delete_token(self, memory_store, test_user):
        token = _token_for(test_user.id)
        memory_store.insert_token(token)

        assert memory_store.delete_token(token.value) is True
        assert memory_store.delete_token(token.value) is False
        assert memory_store.get_token(token.value) is None

    def test_delete_user_tokens_with_exception(self, memory_store, test_user):
        keep = _token_for(test_user.id)
        drop = _token_for(test_user.id)
        memory_store.insert_token(keep)
        memory_store.insert_token(drop)

        assert memory_store.delete_user_tokens(test_user.id, except_value=keep.value) == 1
        assert memory_store.get_token(keep.value) is not None
        assert memory_store.get_token(drop.value) is None
        assert memory_store.delete_user_tokens(test_user.id) == 1

    def test_failed_snapshot_rolls_back_insert(self, memory_store, test_user, monkeypatch):
        def _fail(self, *args, **kwargs):
            raise OSError("read-only file system")

        token = _token_for(test_user.id)
        monkeypatch.setattr(Path, "write_text", _fail)

        with pytest.raises(PersistenceError):
            memory_store.insert_token(token)
        assert memory_store.get_token(token.value) is None

    def test_failed_snapshot_restores_deleted_token(self, memory_store, test_user, monkeypatch):
        token = _token_for(test_user.id)
        memory_store.insert_token(token)

        def _fail(self, *args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(Path, "write_text", _fail)

        with pytest.raises(PersistenceError):
            memory_store.delete_token(token.value)
        assert memory_store.get_token(token.value) is not None


class TestTasks:
    def test_create_and_get(self, memory_store, test_user):
        task = memory_store.create_task(test_user.id, "plan week", "2024-03-04")
        fetched = memory_store.get_task(task.id)
        assert fetched.title == "plan week"
        assert fetched.planned_at == "2024-03-04"
        assert fetched.completed is False

    def test_create_for_missing_user_rejected(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_task(77, "orphan", "2024-01-01")

    def test_update_partial(self, memory_store, test_user):
        task = memory_store.create_task(test_user.id, "draft", "2024-03-04")

        updated = memory_store.update_task(task.id, completed=True)

        assert updated.completed is True
        assert updated.title == "draft"
        assert memory_store.update_task(999, title="x") is None

    def test_delete(self, memory_store, test_user):
        task = memory_store.create_task(test_user.id, "temp", "2024-03-04")
        assert memory_store.delete_task(task.id) is True
        assert memory_store.delete_task(task.id) is False

    def test_search_filters_are_exclusive(self, memory_store, test_user):
        for day in ("2024-01-01", "2024-01-02", "2024-01-03", "2024-01-04"):
            memory_store.create_task(test_user.id, day, day)

        found = memory_store.search_tasks(
            TaskFilter(user_id=test_user.id, after="2024-01-01", before="2024-01-04")
        )

        assert sorted(t.planned_at for t in found) == ["2024-01-02", "2024-01-03"]

    def test_search_scopes_to_user_and_completion(self, memory_store, test_user):
        other = memory_store.create_user("other@example.com")
        done = memory_store.create_task(test_user.id, "done", "2024-01-01")
        memory_store.update_task(done.id, completed=True)
        memory_store.create_task(test_user.id, "open", "2024-01-01")
        memory_store.create_task(other.id, "theirs", "2024-01-01")

        found = memory_store.search_tasks(TaskFilter(user_id=test_user.id, completed=True))

        assert [t.title for t in found] == ["done"]

    def test_search_order_and_pagination(self, memory_store, test_user):
        memory_store.create_task(test_user.id, "c", "2024-01-03")
        memory_store.create_task(test_user.id, "a", "2024-01-01")
        memory_store.create_task(test_user.id, "b", "2024-01-02")

        asc = memory_store.search_tasks(
            TaskFilter(user_id=test_user.id, order_col="planned_at", order_dir="asc")
        )
        by_id = memory_store.search_tasks(TaskFilter(user_id=test_user.id))
        page = memory_store.search_tasks(
            TaskFilter(
                user_id=test_user.id,
                order_col="planned_at",
                order_dir="asc",
                limit=1,
                offset=1,
            )
        )

        assert [t.title for t in asc] == ["a", "b", "c"]
        assert [t.title for t in by_id] == ["b", "a", "c"]
        assert [t.title for t in page] == ["b"]

    def test_count(self, memory_store, test_user):
        memory_store.create_task(test_user.id, "one", "2024-01-01")
        memory_store.create_task(test_user.id, "two", "2024-02-01")

        assert memory_store.count_tasks(TaskFilter(user_id=test_user.id)) == 2
        assert (
            memory_store.count_tasks(TaskFilter(user_id=test_user.id, after="2024-01-15"))
            == 1
        )


class TestFailedSnapshotRollsBack:
    """A mutation whose snapshot write fails must leave no trace in memory."""

    @pytest.fixture
    def read_only_disk(self, monkeypatch):
        def _arm():
            def _fail(self, *args, **kwargs):
                raise OSError("read-only file system")

            monkeypatch.setattr(Path, "write_text", _fail)

        return _arm

    def test_update_user_settings(self, memory_store, test_user, read_only_disk):
        read_only_disk()

        with pytest.raises(PersistenceError):
            memory_store.update_user_settings(test_user.id, start_of_week=5, rollover_time="04:00")

        user = memory_store.get_user(test_user.id)
        assert user.start_of_week == 1
        assert user.rollover_time == "00:00"

    def test_delete_user(self, memory_store, test_user, read_only_disk):
        memory_store.save_password(test_user.id, "hash", "argon2id")
        token = _token_for(test_user.id)
        memory_store.insert_token(token)
        task = memory_store.create_task(test_user.id, "keep me", "2024-01-01")
        read_only_disk()

        with pytest.raises(PersistenceError):
            memory_store.delete_user(test_user.id)

        assert memory_store.get_user(test_user.id) is not None
        assert memory_store.get_password_record(test_user.id) == ("hash", "argon2id")
        assert memory_store.get_token(token.value) == token
        assert memory_store.get_task(task.id).title == "keep me"

    def test_save_password_first_record(self, memory_store, test_user, read_only_disk):
        read_only_disk()

        with pytest.raises(PersistenceError):
            memory_store.save_password(test_user.id, "hash", "argon2id")

        assert memory_store.get_password_record(test_user.id) is None

    def test_save_password_keeps_previous_record(self, memory_store, test_user, read_only_disk):
        memory_store.save_password(test_user.id, "old-hash", "argon2id")
        read_only_disk()

        with pytest.raises(PersistenceError):
            memory_store.save_password(test_user.id, "new-hash", "argon2id")

        assert memory_store.get_password_record(test_user.id) == ("old-hash", "argon2id")

    def test_update_task(self, memory_store, test_user, read_only_disk):
        task = memory_store.create_task(test_user.id, "draft", "2024-03-04")
        read_only_disk()

        with pytest.raises(PersistenceError):
            memory_store.update_task(task.id, title="final", completed=True)

        stored = memory_store.get_task(task.id)
        assert stored.title == "draft"
        assert stored.completed is False

    def test_delete_task(self, memory_store, test_user, read_only_disk):
        task = memory_store.create_task(test_user.id, "temp", "2024-03-04")
        read_only_disk()

        with pytest.raises(PersistenceError):
            memory_store.delete_task(task.id)

        assert memory_store.get_task(task.id) is not None


class TestSnapshot:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("persist@example.com")
        store.save_password(user.id, "hash", "argon2id")
        token = _token_for(user.id)
        store.insert_token(token)
        task = store.create_task(user.id, "remember", "2024-07-01")

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_user(user.id).email == "persist@example.com"
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        restored = reloaded.get_token(token.value)
        assert restored.expires_at == token.expires_at
        assert restored.user_id == user.id
        assert reloaded.get_task(task.id).title == "remember"
        assert reloaded.create_user("next@example.com").id == user.id + 1

    def test_corrupt_snapshot_raises(self, tmp_path):
        state_dir = tmp_path / "state"
        state_dir.mkdir()
        (state_dir / "memory_store.json").write_text("{not json")

        with pytest.raises(PersistenceError):
            MemoryStore(fs_root=str(tmp_path))
