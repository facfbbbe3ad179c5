import os

import pytest

from conftest import ManualClock
from meetflow.services.chunk_storage import ChunkStorage
from meetflow.services.realtime.sweeper import LifecycleSweeper


def test_released_files_are_removed_after_retention(tmp_path):
    clock = ManualClock()
    storage = ChunkStorage(str(tmp_path), retention_seconds=60, grace_seconds=7200, clock=clock)
    handle = storage.write("s1", "chunk_00000.raw", b"abc")

    assert storage.sweep(now=clock() + 3600) == 0
    assert os.path.exists(handle.path)

    assert storage.release(handle) is True
    assert storage.sweep(now=clock() + 59) == 0
    assert storage.sweep(now=clock() + 60) == 1
    assert not os.path.exists(handle.path)
    assert not storage.is_tracked(handle.path)


def test_stale_token_does_not_release_new_generation(tmp_path):
    clock = ManualClock()
    storage = ChunkStorage(str(tmp_path), retention_seconds=0, clock=clock)
    old = storage.write("s1", "chunk.wav", b"old")
    new = storage.write("s1", "chunk.wav", b"new")

    assert storage.release(old) is False
    assert storage.sweep(now=clock() + 10) == 0
    with open(new.path, "rb") as f:
        assert f.read() == b"new"


def test_untracked_leftovers_go_after_grace(tmp_path):
    clock = ManualClock(start=0.0)
    storage = ChunkStorage(str(tmp_path), grace_seconds=100, clock=clock)
    leftover_dir = tmp_path / "old-session"
    leftover_dir.mkdir()
    leftover = leftover_dir / "chunk_00003.raw"
    leftover.write_bytes(b"x")
    mtime = os.path.getmtime(leftover)

    assert storage.sweep(now=mtime + 50) == 0
    assert leftover.exists()
    assert storage.sweep(now=mtime + 100) == 1
    assert not leftover.exists()


def test_sweep_tolerates_files_deleted_underneath(tmp_path):
    clock = ManualClock()
    storage = ChunkStorage(str(tmp_path), retention_seconds=0, clock=clock)
    handle = storage.write("s1", "gone.raw", b"x")
    storage.release(handle)
    os.remove(handle.path)

    assert storage.sweep(now=clock() + 1) == 1


class _FailingRegistry:
    def sweep_sessions(self):
        raise RuntimeError("boom")


def test_sweeper_pass_never_raises(tmp_path):
    clock = ManualClock()
    storage = ChunkStorage(str(tmp_path), retention_seconds=0, clock=clock)
    handle = storage.write("s1", "done.raw", b"x")
    storage.release(handle)
    clock.advance(1)

    result = LifecycleSweeper(_FailingRegistry(), storage).sweep_once()
    assert result["expired"] == 0
    assert result["files_deleted"] == 1


def test_failed_write_is_not_tracked(tmp_path):
    storage = ChunkStorage(str(tmp_path))
    blocked = tmp_path / "s1" / "chunk_00000.raw"
    blocked.mkdir(parents=True)

    with pytest.raises(OSError):
        storage.write("s1", "chunk_00000.raw", b"abc")
    assert not storage.is_tracked(str(blocked))
    assert storage.sweep(now=10 ** 10) == 0
