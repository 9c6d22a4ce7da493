"""Tests for per-turn file checkpoints."""

import asyncio
import os

import pytest

from engine.checkpoints import CheckpointError, CheckpointManager


@pytest.fixture
def manager(tmp_path):
    return CheckpointManager(str(tmp_path / "checkpoints"))


def test_rollback_restores_edits_and_removes_created_files(tmp_path, manager):
    in_path = tmp_path / "in.txt"
    out_path = tmp_path / "out.txt"
    in_path.write_text("original\n")

    async def scenario():
        await manager.create("s1", 4)
        assert await manager.record_snapshot("s1", str(in_path))
        in_path.write_text("edited\n")
        assert await manager.record_snapshot("s1", str(out_path))
        out_path.write_text("new file\n")

        checkpoint = await manager.load("s1")
        snapshots = {os.path.basename(s.path): s for s in checkpoint.file_snapshots}
        assert snapshots["in.txt"].existed and snapshots["in.txt"].prior_content == "original\n"
        assert not snapshots["out.txt"].existed

        first = await manager.rollback("s1")
        second = await manager.rollback("s1")
        return first, second

    first, second = asyncio.run(scenario())
    assert first == 4
    assert second is None
    assert in_path.read_text() == "original\n"
    assert not out_path.exists()


def test_first_snapshot_of_a_path_wins(tmp_path, manager):
    path = tmp_path / "a.txt"
    path.write_text("v1")

    async def scenario():
        await manager.create("s1", 0)
        await manager.record_snapshot("s1", str(path))
        path.write_text("v2")
        again = await manager.record_snapshot("s1", str(path))
        path.write_text("v3")
        await manager.rollback("s1")
        return again

    assert asyncio.run(scenario()) is False
    assert path.read_text() == "v1"


def test_commit_keeps_changes(tmp_path, manager):
    path = tmp_path / "a.txt"
    path.write_text("before")

    async def scenario():
        await manager.create("s1", 2)
        await manager.record_snapshot("s1", str(path))
        path.write_text("after")
        await manager.commit("s1")
        return await manager.rollback("s1")

    assert asyncio.run(scenario()) is None
    assert path.read_text() == "after"


def test_snapshot_without_checkpoint_is_ignored(tmp_path, manager):
    assert manager.record_snapshot_sync("s1", str(tmp_path / "a.txt")) is False


def test_unreadable_path_blocks_the_mutation(tmp_path, manager):
    directory = tmp_path / "a_dir"
    directory.mkdir()

    async def scenario():
        await manager.create("s1", 0)
        await manager.record_snapshot("s1", str(directory))

    with pytest.raises(CheckpointError):
        asyncio.run(scenario())


def test_checkpoint_survives_a_new_manager(tmp_path, manager):
    path = tmp_path / "a.txt"
    path.write_text("v1")

    async def record():
        await manager.create("s1", 3)
        await manager.record_snapshot("s1", str(path))

    asyncio.run(record())
    path.write_text("v2")

    fresh = CheckpointManager(manager.base_dir)
    assert asyncio.run(fresh.rollback("s1")) == 3
    assert path.read_text() == "v1"


def test_new_turn_replaces_the_previous_checkpoint(tmp_path, manager):
    path = tmp_path / "a.txt"
    path.write_text("v1")

    async def scenario():
        await manager.create("s1", 0)
        await manager.record_snapshot("s1", str(path))
        path.write_text("v2")
        await manager.create("s1", 5)
        return await manager.rollback("s1")

    assert asyncio.run(scenario()) == 5
    assert path.read_text() == "v2"


def test_reanchored_checkpoint_rolls_back_to_the_new_index(tmp_path, manager):
    async def scenario():
        await manager.create("s1", 11)
        await manager.reanchor("s1", 7)
        stored = await CheckpointManager(manager.base_dir).load("s1")
        return stored, await manager.rollback("s1")

    stored, cut = asyncio.run(scenario())
    assert (stored.message_index, stored.transcript_start) == (11, 7)
    assert cut == 7
