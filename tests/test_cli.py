"""CLI behaviour tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from infectio.cli import _build_parser, main
from tests._fixtures.builders import build_encrypted_zip, build_zip


def test_cli_accepts_verbose_before_and_after_command() -> None:
    parser = _build_parser()
    assert parser.parse_args(["--verbose", "scan", "x"]).verbose is True
    assert parser.parse_args(["scan", "x", "--verbose"]).verbose is True


def test_cli_scan_flags() -> None:
    args = _build_parser().parse_args(["scan", "sample.zip", "--password", "pw", "--json", "--recursive"])
    assert args.command == "scan"
    assert args.path == "sample.zip"
    assert args.password == "pw"
    assert args.json is True
    assert args.recursive is True


def test_cli_serve_overrides() -> None:
    args = _build_parser().parse_args(["serve", "--host", "0.0.0.0", "--port", "9000"])
    assert (args.host, args.port) == ("0.0.0.0", 9000)


def test_scan_prints_text_report(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    sample = tmp_path / "notes.txt"
    sample.write_text("beacon to http://example.com/gate from 10.1.2.3\n", encoding="utf-8")

    main(["scan", str(sample), "--config", str(tmp_path)])

    out = capsys.readouterr().out
    assert "== notes.txt" in out
    assert "Content type: text/plain" in out
    assert "IPs: 10.1.2.3" in out
    assert "URLs: http://example.com/gate" in out
    assert "structured_report: Unsupported file type: text/plain" in out


def test_scan_json_recursive_with_password(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    inner = build_zip({"deep/note.txt": b"inner text content"})
    sample = tmp_path / "outer.zip"
    sample.write_bytes(build_encrypted_zip({"inner.zip": inner}, "infected"))

    main(["scan", str(sample), "--config", str(tmp_path), "--json", "--recursive", "--password", "infected"])

    payload = json.loads(capsys.readouterr().out)
    names = [entry["name"] for entry in payload]
    assert names == ["outer.zip", "inner.zip", "deep/note.txt"]
    outer = payload[0]
    assert outer["report"]["needs_secret"] is False
    assert outer["report"]["structured"]["items"][0]["has_data"] is True
    assert [entry["depth"] for entry in payload] == [0, 1, 2]
    assert payload[1]["parent_id"] == outer["id"]


def test_scan_missing_file_exits(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["scan", str(tmp_path / "absent.bin"), "--config", str(tmp_path)])
    assert excinfo.value.code == 1


def test_bad_config_exits(tmp_path: Path) -> None:
    (tmp_path / ".infectio.yml").write_text("- not a mapping\n", encoding="utf-8")
    sample = tmp_path / "a.txt"
    sample.write_text("hello world", encoding="utf-8")
    with pytest.raises(SystemExit) as excinfo:
        main(["scan", str(sample), "--config", str(tmp_path)])
    assert excinfo.value.code == 1
