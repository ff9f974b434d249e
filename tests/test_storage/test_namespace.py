"""Tests for directory-backed namespaces."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from rollcall.storage.namespace import JsonNamespace, TypedNamespace


class TestJsonNamespace:
    def test_put_get_survives_reload(self, tmp_path: Path) -> None:
        ns = JsonNamespace(tmp_path / "ns")
        ns.put("a", {"x": 1})
        assert JsonNamespace(tmp_path / "ns").get("a") == {"x": 1}

    def test_keys_with_unsafe_characters(self, tmp_path: Path) -> None:
        ns = JsonNamespace(tmp_path / "ns")
        ns.put("person:loc/1", {"ok": True})
        reloaded = JsonNamespace(tmp_path / "ns")
        assert reloaded.keys() == ["person:loc/1"]
        assert len(list((tmp_path / "ns").iterdir())) == 1

    def test_get_returns_copy(self, tmp_path: Path) -> None:
        ns = JsonNamespace(tmp_path / "ns")
        ns.put("a", {"nested": {"x": 1}})
        ns.get("a")["nested"]["x"] = 2
        assert ns.get("a") == {"nested": {"x": 1}}

    def test_delete(self, tmp_path: Path) -> None:
        ns = JsonNamespace(tmp_path / "ns")
        ns.put("a", {})
        assert ns.delete("a") is True
        assert "a" not in ns
        assert ns.delete("a") is False
        assert JsonNamespace(tmp_path / "ns").get("a") is None

    def test_skips_corrupt_files(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        directory = tmp_path / "ns"
        ns = JsonNamespace(directory)
        ns.put("good", {"v": 1})
        (directory / "bad.json").write_text("{truncated")
        (directory / "list.json").write_text("[1, 2]")

        with caplog.at_level(logging.WARNING, logger="rollcall.storage.namespace"):
            reloaded = JsonNamespace(directory)

        assert reloaded.keys() == ["good"]
        assert "skipping" in caplog.text

    def test_ignores_temp_files(self, tmp_path: Path) -> None:
        directory = tmp_path / "ns"
        directory.mkdir()
        (directory / ".tmp.abc123").write_text("{}")
        assert len(JsonNamespace(directory)) == 0


def _decode(data: dict) -> int:
    return int(data["n"])


def _encode(value: int) -> dict:
    return {"n": value}


class TestTypedNamespace:
    def test_round_trip(self, tmp_path: Path) -> None:
        ns: TypedNamespace[int] = TypedNamespace(tmp_path / "ns", _decode, _encode)
        ns.put("one", 1)
        reloaded: TypedNamespace[int] = TypedNamespace(tmp_path / "ns", _decode, _encode)
        assert reloaded.get("one") == 1
        assert reloaded.values() == [1]

    def test_invalid_record_is_skipped_but_kept_on_disk(self, tmp_path: Path) -> None:
        raw = JsonNamespace(tmp_path / "ns")
        raw.put("ok", {"n": 3})
        raw.put("broken", {"m": 1})

        ns: TypedNamespace[int] = TypedNamespace(tmp_path / "ns", _decode, _encode)
        assert "broken" not in ns
        assert len(ns) == 1
        assert (tmp_path / "ns" / "broken.json").exists()

    def test_delete(self, tmp_path: Path) -> None:
        ns: TypedNamespace[int] = TypedNamespace(tmp_path / "ns", _decode, _encode)
        ns.put("x", 5)
        assert ns.delete("x") is True
        assert ns.get("x") is None
