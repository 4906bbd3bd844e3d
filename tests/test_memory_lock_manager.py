"""Tests for the memory lock coordinator and its lock/version stores."""

import asyncio
import json
import time
from dataclasses import replace

import pytest

from persona_coord.config import CoordinationConfig
from persona_coord.core.errors import StorageInitError
from persona_coord.core.memory_lock_manager import LockFailureReason, MemoryLockManager
from persona_coord.core.memory_scope import MemoryUnit


async def _write(manager, memory_id, content, persona="p", project_hash=None, author="tester"):
    acquired = await manager.acquire_lock(memory_id, persona, author, project_hash=project_hash)
    assert acquired.success, acquired.error
    result = await manager.update_with_versioning(
        memory_id, persona, content, acquired.lock_id, author, project_hash=project_hash
    )
    assert result.success, result.error
    return result.new_version


async def _expire(manager, memory_id):
    record = await manager.get_active_lock(memory_id)
    await manager.lock_store.save(replace(record, expires_at=time.time() - 1))
    return record


@pytest.mark.asyncio
async def test_end_to_end_two_versions(lock_manager):
    first = await lock_manager.acquire_lock("M", "p", "session-a")
    assert first.success
    assert first.current_version == 0

    updated = await lock_manager.update_with_versioning("M", "p", "v1", first.lock_id, "session-a")
    assert updated.new_version == 1

    history = await lock_manager.get_version_history("M", "p")
    assert [(r.version, r.content) for r in history] == [(1, "v1")]

    second = await lock_manager.acquire_lock("M", "p", "session-b")
    assert second.success
    assert second.current_version == 1

    updated = await lock_manager.update_with_versioning("M", "p", "v2", second.lock_id, "session-b")
    assert updated.new_version == 2

    history = await lock_manager.get_version_history("M", "p")
    assert [(r.version, r.content) for r in history] == [(2, "v2"), (1, "v1")]
    assert history[0].author == "session-b"
    assert await lock_manager.get_active_lock("M") is None


@pytest.mark.asyncio
async def test_correct_expected_version_then_update(lock_manager):
    await _write(lock_manager, "notes", "a")
    await _write(lock_manager, "notes", "b")

    acquired = await lock_manager.acquire_lock("notes", "p", "s", expected_version=2)
    assert acquired.success
    result = await lock_manager.update_with_versioning("notes", "p", "c", acquired.lock_id, "s")
    assert result.new_version == 3


@pytest.mark.asyncio
async def test_stale_expected_version_is_conflict_without_lock(lock_manager):
    await _write(lock_manager, "notes", "a")
    await _write(lock_manager, "notes", "b")

    result = await lock_manager.acquire_lock("notes", "p", "s", expected_version=1)

    assert not result.success
    assert result.reason == LockFailureReason.VERSION_CONFLICT
    assert result.current_version == 2
    assert result.error == "Version conflict: expected 1, current is 2"
    assert await lock_manager.get_active_lock("notes") is None


@pytest.mark.asyncio
async def test_live_lock_blocks_second_acquire(lock_manager):
    first = await lock_manager.acquire_lock("M", "p", "session-a")
    second = await lock_manager.acquire_lock("M", "p", "session-b")

    assert first.success
    assert not second.success
    assert second.reason == LockFailureReason.LOCKED
    assert second.locked_by == "session-a"
    assert second.error.startswith("Memory M is locked by session-a until ")


@pytest.mark.asyncio
async def test_lock_is_keyed_by_memory_id_across_personas(lock_manager):
    assert (await lock_manager.acquire_lock("shared", "p1", "a")).success
    result = await lock_manager.acquire_lock("shared", "p2", "b")
    assert result.reason == LockFailureReason.LOCKED


@pytest.mark.asyncio
async def test_concurrent_acquire_grants_exactly_one(lock_manager):
    results = await asyncio.gather(
        *(lock_manager.acquire_lock("hot", "p", f"session-{i}") for i in range(10))
    )
    winners = [r for r in results if r.success]
    assert len(winners) == 1
    assert all(r.reason == LockFailureReason.LOCKED for r in results if not r.success)


@pytest.mark.asyncio
async def test_unit_guards_do_not_accumulate(lock_manager):
    for i in range(20):
        await _write(lock_manager, f"unit-{i}", "v1")
    await asyncio.gather(*(lock_manager.acquire_lock("hot", "p", f"s-{i}") for i in range(5)))

    assert len(lock_manager._unit_guards) == 0


@pytest.mark.asyncio
async def test_expired_lock_is_reclaimed_by_acquire(lock_manager):
    stale = await lock_manager.acquire_lock("M", "p", "crashed-session")
    await _expire(lock_manager, "M")

    fresh = await lock_manager.acquire_lock("M", "p", "session-b")
    assert fresh.success
    assert fresh.lock_id != stale.lock_id

    result = await lock_manager.update_with_versioning("M", "p", "x", stale.lock_id, "crashed-session")
    assert result.reason == LockFailureReason.INVALID_LOCK


@pytest.mark.asyncio
async def test_update_with_expired_lock_fails_and_reclaims(lock_manager):
    acquired = await lock_manager.acquire_lock("M", "p", "s")
    await _expire(lock_manager, "M")

    result = await lock_manager.update_with_versioning("M", "p", "late", acquired.lock_id, "s")

    assert not result.success
    assert result.reason == LockFailureReason.LOCK_EXPIRED
    assert result.error == "Lock has expired"
    assert not lock_manager.lock_file_for("M").exists()
    assert await lock_manager.get_current_version("M", "p") == 0


@pytest.mark.asyncio
async def test_update_requires_matching_lock(lock_manager):
    result = await lock_manager.update_with_versioning("M", "p", "x", "no-such-lock", "s")
    assert result.reason == LockFailureReason.NOT_LOCKED
    assert result.error == "Memory is not locked"

    await lock_manager.acquire_lock("M", "p", "s")
    result = await lock_manager.update_with_versioning("M", "p", "x", "wrong-lock", "s")
    assert result.reason == LockFailureReason.INVALID_LOCK
    assert result.error == "Invalid lock ID"


@pytest.mark.asyncio
async def test_release_lock(lock_manager):
    acquired = await lock_manager.acquire_lock("M", "p", "s")

    assert await lock_manager.release_lock(acquired.lock_id) is True
    assert await lock_manager.release_lock(acquired.lock_id) is False
    assert (await lock_manager.acquire_lock("M", "p", "other")).success


@pytest.mark.asyncio
async def test_detect_conflicts_lists_newer_versions(lock_manager):
    for content, author in (("a", "alice"), ("b", "bob"), ("c", "carol")):
        await _write(lock_manager, "doc", content, author=author)

    conflicts = await lock_manager.detect_conflicts("doc", "p", 1)

    assert len(conflicts) == 2
    assert conflicts[0].startswith("Version 3 by carol at ")
    assert conflicts[1].startswith("Version 2 by bob at ")
    assert await lock_manager.detect_conflicts("doc", "p", 3) == []


@pytest.mark.asyncio
async def test_history_is_trimmed_to_max_versions(coord_config):
    manager = MemoryLockManager(replace(coord_config, max_versions=5))
    await manager.initialize()

    for i in range(1, 8):
        assert await _write(manager, "log", f"v{i}") == i

    history = await manager.get_version_history("log", "p", limit=100)
    assert [r.version for r in history] == [7, 6, 5, 4, 3]
    assert await manager.get_memory_version("log", "p", 1) is None
    assert (await manager.get_memory_version("log", "p", 5)).content == "v5"
    assert await manager.get_current_version("log", "p") == 7


@pytest.mark.asyncio
async def test_history_default_limit(lock_manager):
    for i in range(12):
        await _write(lock_manager, "busy", f"v{i}")

    assert len(await lock_manager.get_version_history("busy", "p")) == 10
    assert len(await lock_manager.get_version_history("busy", "p", limit=3)) == 3


@pytest.mark.asyncio
async def test_read_accessors_default_for_unknown_unit(lock_manager):
    assert await lock_manager.get_current_version("missing", "p") == 0
    assert await lock_manager.get_version_history("missing", "p") == []
    assert await lock_manager.get_memory_version("missing", "p", 1) is None
    assert await lock_manager.detect_conflicts("missing", "p", 0) == []


@pytest.mark.asyncio
async def test_project_and_persona_scopes_are_separate(lock_manager, coord_config):
    await _write(lock_manager, "notes", "persona-wide")
    await _write(lock_manager, "notes", "project-only", project_hash="a1b2c3")

    persona_file = coord_config.versions_dir / "personas" / "p" / "notes.json"
    project_file = coord_config.versions_dir / "projects" / "a1b2c3" / "notes.json"
    assert persona_file.exists()
    assert project_file.exists()

    stored = json.loads(project_file.read_text())
    assert stored[0]["content"] == "project-only"
    assert stored[0]["version"] == 1
    assert len(stored[0]["checksum"]) == 64
    assert await lock_manager.get_current_version("notes", "p") == 1


@pytest.mark.asyncio
async def test_corrupted_version_file_is_quarantined(lock_manager, coord_config):
    path = coord_config.versions_dir / "personas" / "p" / "broken.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json")

    assert await lock_manager.get_current_version("broken", "p") == 0
    assert await _write(lock_manager, "broken", "fresh") == 1
    assert path.with_name("broken.json.corrupt").exists()


@pytest.mark.asyncio
async def test_corrupted_lock_file_reads_as_absent(lock_manager):
    lock_file = lock_manager.lock_file_for("M")
    lock_file.write_text("")

    assert await lock_manager.get_active_lock("M") is None
    assert (await lock_manager.acquire_lock("M", "p", "s")).success


@pytest.mark.asyncio
async def test_lock_file_is_shared_by_every_scope(lock_manager, coord_config):
    project_unit = MemoryUnit.create("M", "p", "abc123")
    await lock_manager.acquire_lock("M", "p", "s", project_hash="abc123")

    lock_file = lock_manager.lock_file_for("M")
    assert lock_file == coord_config.locks_dir / "M.lock"
    assert lock_manager.lock_store.path_for(project_unit) == lock_file
    assert lock_manager.lock_store.path_for(MemoryUnit.create("M", "other")) == lock_file
    assert json.loads(lock_file.read_text())["project_hash"] == "abc123"


@pytest.mark.asyncio
async def test_cleanup_expired_locks(lock_manager):
    for memory_id in ("a", "b", "c"):
        await lock_manager.acquire_lock(memory_id, "p", "s")
    await _expire(lock_manager, "a")
    await _expire(lock_manager, "b")

    assert await lock_manager.cleanup_expired_locks() == 2
    assert await lock_manager.get_active_lock("c") is not None


@pytest.mark.asyncio
async def test_initialize_reclaims_locks_left_by_previous_run(coord_config):
    first = MemoryLockManager(coord_config)
    await first.initialize()
    await first.acquire_lock("M", "p", "s")
    await _expire(first, "M")

    second = MemoryLockManager(coord_config)
    await second.initialize()
    assert not second.lock_file_for("M").exists()


@pytest.mark.asyncio
@pytest.mark.parametrize("memory_id", ["", "../escape", "a/b", ".."])
async def test_invalid_memory_id_raises(lock_manager, memory_id):
    with pytest.raises(ValueError):
        await lock_manager.acquire_lock(memory_id, "p", "s")


@pytest.mark.asyncio
async def test_initialize_fails_when_storage_cannot_be_created(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    manager = MemoryLockManager(CoordinationConfig(base_dir=blocker / "home"))

    with pytest.raises(StorageInitError):
        await manager.initialize()


def test_construction_has_no_side_effects(tmp_path):
    config = CoordinationConfig(base_dir=tmp_path / "untouched")
    MemoryLockManager(config)
    assert not config.base_dir.exists()
