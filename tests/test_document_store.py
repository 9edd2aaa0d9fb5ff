"""Tests for the versioned document store."""

from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from helpers import make_document
from timetrack.config import DEFAULT_PROJECTS
from timetrack.models.document import TimeTrackerData
from timetrack.store.document_store import DocumentStore
from timetrack.store.locking import LockManager


def _iso(delta: timedelta = timedelta()) -> str:
    return (datetime.now(timezone.utc) + delta).isoformat()


def _write_raw(store: DocumentStore, user_id: str, payload: dict) -> Path:
    path = store.data_dir / f"data_{user_id}.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------


class TestLoad:
    def test_missing_user_returns_defaults_without_creating_file(self, store: DocumentStore):
        result = store.load("u1")

        assert result.success
        assert result.version == 0
        assert result.exists is False
        assert result.data.sessions == []
        assert result.data.project_names() == [name for name, _ in DEFAULT_PROJECTS]
        assert not (store.data_dir / "data_u1.json").exists()

    def test_load_strips_metadata(self, store: DocumentStore):
        store.save("u1", make_document("s1"), "c1", 0)
        result = store.load("u1")

        dumped = result.data.to_json()
        assert result.version == 1
        assert "_version" not in dumped
        assert "_clients" not in dumped
        assert [s["id"] for s in dumped["sessions"]] == ["s1"]

    def test_load_is_idempotent(self, store: DocumentStore):
        store.save("u1", make_document("s1", "s2"), "c1", 0)
        first = store.load("u1")
        second = store.load("u1")
        assert first == second

    def test_corrupt_file_falls_back_to_defaults(self, store: DocumentStore):
        path = store.data_dir / "data_u1.json"
        path.write_text("{not json", encoding="utf-8")

        result = store.load("u1")

        assert result.success
        assert result.recovered is True
        assert result.data.project_names() == [name for name, _ in DEFAULT_PROJECTS]
        # Load never rewrites the file
        assert path.read_text(encoding="utf-8") == "{not json"

    def test_invalid_schema_keeps_readable_version(self, store: DocumentStore):
        _write_raw(store, "u1", {"_version": 5, "sessions": "oops"})

        result = store.load("u1")

        assert result.recovered is True
        assert result.version == 5
        assert store.get_version("u1") == 5

    def test_invalid_user_id_is_a_failure_result(self, store: DocumentStore):
        result = store.load("../escape")
        assert result.success is False
        assert "Invalid user id" in result.error

    def test_legacy_project_names_are_coerced(self, store: DocumentStore):
        _write_raw(store, "u1", {
            "sessions": [],
            "projects": ["Work", "Home"],
            "_version": 4,
            "_lastModified": _iso(),
            "_userId": "u1",
            "_clients": [],
        })
        result = store.load("u1")
        assert result.version == 4
        assert result.data.project_names() == ["Work", "Home"]


# ---------------------------------------------------------------------------
# Save
# ---------------------------------------------------------------------------


class TestSave:
    def test_first_save_stale_save_then_fresh_save(self, store: DocumentStore):
        first = store.save("u1", make_document("d0"), "c1", expected_version=0)
        assert first.success is True
        assert first.version == 1

        stale = store.save("u1", make_document("d1"), "c2", expected_version=0)
        assert stale.success is False
        assert stale.conflict is True
        assert stale.reason == "version_mismatch"
        assert stale.version == 1
        assert [s.id for s in stale.data.sessions] == ["d0"]

        fresh = store.save("u1", make_document("d1"), "c2", expected_version=1)
        assert fresh.success is True
        assert fresh.version == 2
        assert [s.id for s in store.load("u1").data.sessions] == ["d1"]

    def test_get_version_before_and_after_save(self, store: DocumentStore):
        assert store.get_version("u1") == 0
        store.save("u1", make_document("d0"), "c1", 0)
        assert store.get_version("u1") == 1

    def test_versions_increase_by_exactly_one(self, store: DocumentStore):
        versions = []
        for n in range(5):
            result = store.save("u1", make_document(f"s{n}"), "c1", expected_version=n)
            versions.append(result.version)
        assert versions == [1, 2, 3, 4, 5]

    def test_save_without_expected_version_skips_check(self, store: DocumentStore):
        store.save("u1", make_document("a"), "c1", 0)
        store.save("u1", make_document("b"), "c1", 1)
        result = store.save("u1", make_document("c"), "c1")
        assert result.success
        assert result.version == 3

    def test_conflict_does_not_touch_file(self, store: DocumentStore):
        store.save("u1", make_document("a"), "c1", 0)
        path = store.data_dir / "data_u1.json"
        before = path.read_bytes()

        result = store.save("u1", make_document("b"), "c2", expected_version=7)

        assert result.conflict
        assert path.read_bytes() == before

    def test_conflict_on_missing_document_carries_defaults(self, store: DocumentStore):
        result = store.save("u1", make_document("a"), "c1", expected_version=3)
        assert result.conflict
        assert result.version == 0
        assert result.data.project_names() == [name for name, _ in DEFAULT_PROJECTS]
        assert not (store.data_dir / "data_u1.json").exists()

    def test_stored_metadata(self, store: DocumentStore):
        store.save("u1", make_document("a"), "c1", 0)
        raw = json.loads((store.data_dir / "data_u1.json").read_text(encoding="utf-8"))

        assert raw["_version"] == 1
        assert raw["_userId"] == "u1"
        assert raw["_clients"][0]["id"] == "c1"
        assert "lastSeen" in raw["_clients"][0]
        datetime.fromisoformat(raw["_lastModified"].replace("Z", "+00:00"))

    def test_invalid_document_rejected(self, store: DocumentStore):
        doc = make_document("a")
        doc["projects"] = [{"name": "X"}, {"name": "X"}]
        result = store.save("u1", doc, "c1", 0)

        assert result.success is False
        assert result.conflict is False
        assert result.reason == "invalid"
        assert store.get_version("u1") == 0

    def test_duplicate_session_ids_rejected(self, store: DocumentStore):
        result = store.save("u1", make_document("a", "a"), "c1", 0)
        assert result.reason == "invalid"

    def test_accepts_model_instances(self, store: DocumentStore):
        doc = TimeTrackerData.model_validate(make_document("a"))
        assert store.save("u1", doc, "c1", 0).success

    def test_no_temp_files_left_behind(self, store: DocumentStore):
        for n in range(3):
            store.save("u1", make_document(f"s{n}"), "c1")
        leftovers = [p.name for p in store.data_dir.iterdir() if p.suffix == ".tmp"]
        assert leftovers == []
        assert not (store.data_dir / "data_u1.lock").exists()

    def test_corrupt_document_is_preserved_then_overwritten(self, store: DocumentStore):
        path = store.data_dir / "data_u1.json"
        path.write_text("{broken", encoding="utf-8")

        result = store.save("u1", make_document("a"), "c1", expected_version=0)

        assert result.success
        assert result.version == 1
        backup = store.data_dir / "data_u1.json.corrupt"
        assert backup.read_text(encoding="utf-8") == "{broken"

    def test_invalid_schema_version_never_decreases(self, store: DocumentStore):
        _write_raw(store, "u1", {"_version": 5, "sessions": "oops"})

        stale = store.save("u1", make_document("a"), "c1", expected_version=0)
        assert stale.conflict is True
        assert stale.version == 5

        result = store.save("u1", make_document("a"), "c1", expected_version=store.get_version("u1"))

        assert result.success
        assert result.version == 6
        assert store.get_version("u1") == 6
        assert (store.data_dir / "data_u1.json.corrupt").exists()

    def test_invalid_user_id(self, store: DocumentStore):
        result = store.save("a/b", make_document("a"), "c1", 0)
        assert result.success is False
        assert result.reason == "invalid"
        assert store.get_version("a/b") == 0


# ---------------------------------------------------------------------------
# Locking during save
# ---------------------------------------------------------------------------


class TestSaveLocking:
    def test_held_lock_times_out_as_conflict(self, tmp_path: Path):
        store = DocumentStore(tmp_path, lock_wait=0.2, lock_poll_interval=0.02)
        store.save("u1", make_document("a"), "c1", 0)

        holder = LockManager(tmp_path / "data_u1.lock")
        assert holder.acquire()
        try:
            result = store.save("u1", make_document("b"), "c2", expected_version=1)
        finally:
            holder.release()

        assert result.success is False
        assert result.conflict is True
        assert result.reason == "lock_timeout"
        assert result.version == 1
        assert store.get_version("u1") == 1

    def test_stale_lock_is_reclaimed(self, tmp_path: Path):
        store = DocumentStore(tmp_path, client_timeout=30, lock_wait=0.2)
        stale = {"timestamp": _iso(timedelta(seconds=-120)), "owner": "pid_dead"}
        (tmp_path / "data_u1.lock").write_text(json.dumps(stale), encoding="utf-8")

        result = store.save("u1", make_document("a"), "c1", 0)

        assert result.success
        assert not (tmp_path / "data_u1.lock").exists()

    def test_concurrent_saves_same_version_one_wins(self, store: DocumentStore):
        barrier = threading.Barrier(2)
        results = {}

        def worker(name: str) -> None:
            barrier.wait()
            results[name] = store.save("u1", make_document(name), name, expected_version=0)

        threads = [threading.Thread(target=worker, args=(n,)) for n in ("left", "right")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [n for n, r in results.items() if r.success]
        losers = [n for n, r in results.items() if r.conflict]
        assert len(winners) == 1
        assert len(losers) == 1
        assert store.get_version("u1") == 1

        loser = results[losers[0]]
        assert loser.version == 1
        assert [s.id for s in loser.data.sessions] == winners

    def test_critical_sections_never_overlap(self, store: DocumentStore, monkeypatch):
        inside = 0
        max_inside = 0
        counter_lock = threading.Lock()
        original_read = store._read

        def tracking_read(user_id: str):
            nonlocal inside, max_inside
            with counter_lock:
                inside += 1
                max_inside = max(max_inside, inside)
            time.sleep(0.01)
            with counter_lock:
                inside -= 1
            return original_read(user_id)

        monkeypatch.setattr(store, "_read", tracking_read)
        barrier = threading.Barrier(6)

        def worker(n: int) -> None:
            barrier.wait()
            assert store.save("u1", make_document(f"s{n}"), f"c{n}").success

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert max_inside == 1
        assert store.get_version("u1") == 6


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdate:
    def test_update_applies_mutation_and_bumps_version(self, store: DocumentStore):
        store.save("u1", make_document("a"), "c1", 0)

        result = store.update(
            "u1",
            lambda data: data.model_copy(update={"sessions": data.sessions[:0]}),
            "timer",
        )

        assert result.success
        assert result.version == 2
        assert store.load("u1").data.sessions == []

    def test_update_on_missing_document_starts_from_defaults(self, store: DocumentStore):
        result = store.update("u1", lambda data: data, "timer")
        assert result.version == 1
        assert store.load("u1").data.project_names() == [name for name, _ in DEFAULT_PROJECTS]


# ---------------------------------------------------------------------------
# Client liveness
# ---------------------------------------------------------------------------


class TestActiveClients:
    def test_clients_recorded_and_refreshed(self, store: DocumentStore):
        store.save("u1", make_document("a"), "c1")
        store.save("u1", make_document("a"), "c2")
        store.save("u1", make_document("a"), "c1")

        assert store.get_active_clients("u1") == ["c2", "c1"]

    def test_stale_clients_dropped(self, store: DocumentStore):
        _write_raw(store, "u1", {
            "sessions": [],
            "projects": [],
            "_version": 1,
            "_lastModified": _iso(),
            "_userId": "u1",
            "_clients": [
                {"id": "old", "lastSeen": _iso(timedelta(minutes=-5))},
                {"id": "new", "lastSeen": _iso()},
            ],
        })
        assert store.get_active_clients("u1") == ["new"]

        store.save("u1", make_document("a"), "c3")
        raw = json.loads((store.data_dir / "data_u1.json").read_text(encoding="utf-8"))
        assert [c["id"] for c in raw["_clients"]] == ["new", "c3"]

    def test_legacy_client_strings(self, store: DocumentStore):
        _write_raw(store, "u1", {
            "sessions": [],
            "projects": [],
            "_version": 1,
            "_lastModified": _iso(),
            "_userId": "u1",
            "_clients": [f"client_1:{_iso()}", "garbage"],
        })
        assert store.get_active_clients("u1") == ["client_1"]

    def test_missing_user_has_no_clients(self, store: DocumentStore):
        assert store.get_active_clients("nobody") == []


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


class TestCleanupStale:
    def _old_document(self, store: DocumentStore, user_id: str, days: int) -> Path:
        return _write_raw(store, user_id, {
            "sessions": [],
            "projects": [],
            "_version": 3,
            "_lastModified": _iso(timedelta(days=-days)),
            "_userId": user_id,
            "_clients": [],
        })

    def test_removes_only_expired_documents(self, store: DocumentStore):
        old = self._old_document(store, "old", days=45)
        store.save("fresh", make_document("a"), "c1")

        removed = store.cleanup_stale()

        assert removed == ["old"]
        assert not old.exists()
        assert store.get_version("fresh") == 1

    def test_skips_locked_documents(self, store: DocumentStore):
        old = self._old_document(store, "old", days=45)
        holder = LockManager(store.data_dir / "data_old.lock")
        assert holder.acquire()
        try:
            assert store.cleanup_stale() == []
        finally:
            holder.release()
        assert old.exists()

    def test_skips_unreadable_documents(self, store: DocumentStore):
        path = store.data_dir / "data_bad.json"
        path.write_text("nope", encoding="utf-8")
        assert store.cleanup_stale() == []
        assert path.exists()

    def test_retention_window_is_configurable(self, tmp_path: Path):
        store = DocumentStore(tmp_path, retention_days=5)
        self._old_document(store, "u1", days=6)
        assert store.cleanup_stale() == ["u1"]
