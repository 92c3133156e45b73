"""Tests for CLI commands."""

import io
import json
from unittest.mock import patch

import pytest

from reasoning_bank.cli import main

MISSING_ID = "6f0e4c1e-2b7a-4d7c-9a43-0d8f1c2e3b4a"


@pytest.fixture
def temp_db(tmp_path):
    """Point the CLI at a temporary database and the offline embedder."""
    db_path = tmp_path / "test.db"
    with patch.dict(
        "os.environ",
        {
            "REASONING_BANK_DB_PATH": str(db_path),
            "REASONING_BANK_EMBEDDING_BACKEND": "mock",
            "REASONING_BANK_EMBEDDING_DIM": "32",
            "REASONING_BANK_DEFAULT_PROJECT_ID": "proj",
        },
    ):
        yield db_path


def run(*args: str) -> int:
    with patch("sys.argv", ["reasoning-bank-cli", *args]):
        return main()


def run_json(capsys, *args: str) -> tuple[int, dict]:
    result = run("--json", *args)
    return result, json.loads(capsys.readouterr().out)


class TestRecordCommand:
    def test_record(self, temp_db, capsys):
        result = run("record", "Retry uploads", "-c", "Wrap the upload in backoff")

        assert result == 0
        out = capsys.readouterr().out
        assert "Recorded memory" in out
        assert "confidence=0.80" in out

    def test_record_json(self, temp_db, capsys):
        result, payload = run_json(
            capsys, "record", "Retry uploads", "-c", "Wrap upload in backoff", "-t", "net"
        )

        assert result == 0
        assert payload["success"] is True
        assert payload["confidence"] == 0.8
        assert payload["project_id"] == "proj"
        assert payload["tags"] == ["net"]

    def test_record_from_stdin(self, temp_db, capsys):
        with patch("sys.stdin", io.StringIO("Pin the protobuf version in CI")):
            result, payload = run_json(capsys, "record", "Pin protobuf")

        assert result == 0
        assert payload["content"] == "Pin the protobuf version in CI"

    def test_record_from_file(self, temp_db, tmp_path, capsys):
        note = tmp_path / "note.md"
        note.write_text("Run migrations before deploying the API")

        result, payload = run_json(capsys, "record", "Deploy order", "-f", str(note))

        assert result == 0
        assert payload["content"] == "Run migrations before deploying the API"

    def test_record_distilled(self, temp_db, capsys):
        result, payload = run_json(
            capsys, "record", "Retry uploads", "-c", "Wrap upload in backoff", "--distilled"
        )
        assert result == 0
        assert payload["confidence"] == 0.6

    def test_record_empty_content_fails(self, temp_db, capsys):
        result = run("record", "Title", "-c", "   ")

        assert result == 1
        assert "content cannot be empty" in capsys.readouterr().err


class TestSearchCommand:
    def test_search_finds_recorded_memory(self, temp_db, capsys):
        _, recorded = run_json(
            capsys, "record", "Nil pointer fix", "-c", "nil pointer fix: check user != nil"
        )

        result, payload = run_json(capsys, "search", "nil pointer fix")

        assert result == 0
        assert [r["id"] for r in payload["results"]] == [recorded["id"]]
        assert payload["results"][0]["outcome"] == "success"

    def test_search_text_output(self, temp_db, capsys):
        run("record", "Nil pointer fix", "-c", "nil pointer fix: check user != nil")
        capsys.readouterr()

        assert run("search", "nil pointer") == 0
        out = capsys.readouterr().out
        assert "[0.80] Nil pointer fix" in out

    def test_search_empty_project(self, temp_db, capsys):
        assert run("search", "anything", "-p", "nobody") == 0
        assert "No memories found" in capsys.readouterr().out


class TestFeedbackCommands:
    def test_feedback_lowers_confidence(self, temp_db, capsys):
        _, recorded = run_json(capsys, "record", "Retry uploads", "-c", "Wrap upload in backoff")

        result, payload = run_json(capsys, "feedback", recorded["id"], "--unhelpful")

        assert result == 0
        assert payload["confidence"] == pytest.approx(0.4)

    def test_feedback_unknown_memory(self, temp_db, capsys):
        result, payload = run_json(capsys, "feedback", MISSING_ID)

        assert result == 1
        assert payload["success"] is False
        assert "memory not found" in payload["error"]

    def test_outcome(self, temp_db, capsys):
        _, recorded = run_json(capsys, "record", "Retry uploads", "-c", "Wrap upload in backoff")

        result = run("outcome", recorded["id"], "--success", "-s", "sess-1")

        assert result == 0
        assert "is now 0.60" in capsys.readouterr().out


class TestMaintenanceCommands:
    def test_count(self, temp_db, capsys):
        run("record", "One", "-c", "first memory")
        run("record", "Two", "-c", "second memory")
        capsys.readouterr()

        assert run("count") == 0
        assert "2 memories in proj" in capsys.readouterr().out

    def test_count_json(self, temp_db, capsys):
        result, payload = run_json(capsys, "count", "-p", "other")
        assert result == 0
        assert payload == {"success": True, "project_id": "other", "count": 0}

    def test_list(self, temp_db, capsys):
        _, first = run_json(capsys, "record", "One", "-c", "first memory")
        _, second = run_json(capsys, "record", "Two", "-c", "second memory")

        result, payload = run_json(capsys, "list")

        assert result == 0
        assert payload["project_id"] == "proj"
        assert [m["id"] for m in payload["memories"]] == [first["id"], second["id"]]

    def test_list_text_output(self, temp_db, capsys):
        run("record", "One", "-c", "first memory")
        capsys.readouterr()

        assert run("list", "-n", "5") == 0
        assert "[0.80] One (active, used 0x)" in capsys.readouterr().out

    def test_list_empty(self, temp_db, capsys):
        assert run("list", "-p", "nobody") == 0
        assert "No memories in nobody" in capsys.readouterr().out

    def test_list_negative_limit(self, temp_db, capsys):
        assert run("list", "-n", "-1") == 1
        assert "limit cannot be negative" in capsys.readouterr().err

    def test_rollup(self, temp_db, capsys):
        _, recorded = run_json(capsys, "record", "Retry uploads", "-c", "Wrap upload in backoff")
        run("feedback", recorded["id"])
        capsys.readouterr()

        result, payload = run_json(capsys, "rollup", recorded["id"])

        assert result == 0
        assert payload["rolled_up"] == {recorded["id"]: 0}

    def test_unknown_command(self, temp_db):
        assert run("frobnicate") != 0
