"""Tests for the capture CLI."""

import json

import pytest
from typer.testing import CliRunner

from capture import __version__
from capture.cli import app

runner = CliRunner()


@pytest.fixture
def store_dir(tmp_path, monkeypatch):
    """An offline store: no model keys, so reasoning falls back to truncate."""
    for key in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "CAPTURE_OPENAI_API_KEY", "CAPTURE_STORE_PATH"):
        monkeypatch.delenv(key, raising=False)
    return tmp_path / "store"


def invoke(store_dir, *args):
    return runner.invoke(app, ["--store", str(store_dir), *args])


class TestAddAndShow:
    def test_add_text(self, store_dir):
        result = invoke(store_dir, "add", "buy oat milk")
        assert result.exit_code == 0, result.output
        assert "ready" in result.output
        assert "buy oat milk" in result.output

    def test_add_json(self, store_dir):
        result = invoke(store_dir, "--json", "add", "call the plumber", "--session", "house")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["status"] == "ready"
        assert data["session_id"] == "house"

        shown = invoke(store_dir, "show", data["id"])
        assert shown.exit_code == 0
        assert "title: call the plumber" in shown.output
        assert "session: house" in shown.output
        assert "log:" in shown.output

    def test_show_missing(self, store_dir):
        result = invoke(store_dir, "show", "nope")
        assert result.exit_code == 1
        assert "Not found: nope" in result.output

    def test_sessions(self, store_dir):
        invoke(store_dir, "add", "first", "--session", "trip")
        result = invoke(store_dir, "sessions")
        assert result.exit_code == 0
        assert result.output.startswith("trip  ")


class TestQueue:
    def test_queue_then_drain(self, store_dir):
        queued = invoke(store_dir, "add", "later please", "--queue")
        assert queued.exit_code == 0
        assert queued.output.startswith("Queued ")

        drained = invoke(store_dir, "drain")
        assert drained.exit_code == 0, drained.output
        assert "processed 1, failed 0, deleted 0, conflicts 0" in drained.output

        listed = invoke(store_dir, "list", "--status", "ready")
        assert "later please" in listed.output

    def test_retry_and_consolidate_on_empty_store(self, store_dir):
        assert "Queued 0 for retry" in invoke(store_dir, "retry").output
        assert "regenerated 0, merged 0" in invoke(store_dir, "consolidate").output

    def test_reprocess(self, store_dir):
        invoke(store_dir, "add", "note one")
        result = invoke(store_dir, "reprocess", "--since", "2000-01-01")
        assert result.exit_code == 0, result.output
        assert "processed 1" in result.output


class TestList:
    def test_limit(self, store_dir):
        invoke(store_dir, "add", "one")
        invoke(store_dir, "add", "two")
        result = invoke(store_dir, "list", "-n", "1")
        assert len(result.output.strip().splitlines()) == 1

    def test_bad_status(self, store_dir):
        result = invoke(store_dir, "list", "--status", "done")
        assert result.exit_code == 1
        assert "unknown status 'done'" in result.output


class TestConfig:
    def test_show_and_set_home(self, store_dir):
        result = invoke(store_dir, "config")
        assert result.exit_code == 0
        assert "reasoning: truncate" in result.output
        assert "queue: 0 pending, 0 failed" in result.output

        result = invoke(store_dir, "config", "--home", "47.6,-122.3")
        assert "home: 47.6,-122.3" in result.output
        assert "home: 47.6,-122.3" in invoke(store_dir, "config").output

    def test_bad_home(self, store_dir):
        result = invoke(store_dir, "config", "--home", "kitchen")
        assert result.exit_code == 1
        assert "expected 'lat,lon'" in result.output


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.output.strip() == f"capture {__version__}"
