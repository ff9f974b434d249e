"""Tests for atomic writes, durable unlink and root discovery."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from rollcall.storage.fs import (
    ROLLCALL_DIR,
    RollcallRootError,
    atomic_write,
    durable_unlink,
    ensure_rollcall_dirs,
    find_root,
)


class TestAtomicWrite:
    """atomic_write() writes content safely via temp + fsync + rename."""

    def test_writes_expected_content(self, tmp_path: Path) -> None:
        target = tmp_path / "record.json"
        atomic_write(target, '{"key": "value"}\n')
        assert target.read_text() == '{"key": "value"}\n'

    def test_writes_bytes_content(self, tmp_path: Path) -> None:
        target = tmp_path / "record.bin"
        atomic_write(target, b"\x00\x01\x02")
        assert target.read_bytes() == b"\x00\x01\x02"

    def test_no_temp_file_left_after_success(self, tmp_path: Path) -> None:
        target = tmp_path / "record.json"
        atomic_write(target, "content\n")
        assert list(tmp_path.iterdir()) == [target]

    def test_overwrites_existing_file(self, tmp_path: Path) -> None:
        target = tmp_path / "record.json"
        target.write_text("old\n")
        atomic_write(target, "new\n")
        assert target.read_text() == "new\n"

    def test_parent_directory_must_exist(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="Parent directory does not exist"):
            atomic_write(tmp_path / "missing" / "record.json", "content\n")

    def test_handles_short_writes(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        target = tmp_path / "record.bin"
        payload = b"ABCDEFGHIJ"
        real_write = os.write
        calls = 0

        def short_write(fd: int, data: bytes | memoryview) -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                return real_write(fd, bytes(data[: max(1, len(data) // 2)]))
            return real_write(fd, bytes(data))

        monkeypatch.setattr(os, "write", short_write)
        atomic_write(target, payload)
        assert target.read_bytes() == payload
        assert calls >= 2

    def test_failed_rename_cleans_up_and_keeps_old_content(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        target = tmp_path / "record.json"
        target.write_text("old\n")

        def boom(src, dst):  # noqa: ANN001, ANN202
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", boom)
        with pytest.raises(OSError, match="disk full"):
            atomic_write(target, "new\n")
        assert target.read_text() == "old\n"
        assert list(tmp_path.iterdir()) == [target]


class TestDurableUnlink:
    def test_removes_file(self, tmp_path: Path) -> None:
        target = tmp_path / "gone.json"
        target.write_text("{}")
        assert durable_unlink(target) is True
        assert not target.exists()

    def test_missing_file(self, tmp_path: Path) -> None:
        assert durable_unlink(tmp_path / "never.json") is False


class TestEnsureDirs:
    def test_creates_layout(self, tmp_path: Path) -> None:
        ensure_rollcall_dirs(tmp_path)
        for sub in ("entities", "queue", "meta", "locks"):
            assert (tmp_path / ROLLCALL_DIR / sub).is_dir()

    def test_idempotent(self, tmp_path: Path) -> None:
        ensure_rollcall_dirs(tmp_path)
        ensure_rollcall_dirs(tmp_path)
        assert (tmp_path / ROLLCALL_DIR).is_dir()


class TestFindRoot:
    def test_walks_up(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("ROLLCALL_ROOT", raising=False)
        ensure_rollcall_dirs(tmp_path)
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_root(nested) == tmp_path.resolve()

    def test_none_when_absent(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("ROLLCALL_ROOT", raising=False)
        # tmp_path lives outside any initialized directory
        assert find_root(tmp_path) is None

    def test_env_var_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        ensure_rollcall_dirs(tmp_path)
        monkeypatch.setenv("ROLLCALL_ROOT", str(tmp_path))
        assert find_root(Path("/")) == tmp_path

    def test_env_var_empty(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ROLLCALL_ROOT", "")
        with pytest.raises(RollcallRootError, match="empty"):
            find_root()

    def test_env_var_without_state_dir(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ROLLCALL_ROOT", str(tmp_path))
        with pytest.raises(RollcallRootError, match="no .rollcall/"):
            find_root()

    def test_env_var_missing_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ROLLCALL_ROOT", str(tmp_path / "nope"))
        with pytest.raises(RollcallRootError, match="does not exist"):
            find_root()
