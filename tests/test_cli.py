"""Tests for the moodleaf CLI."""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from moodleaf.cli import app
from tests.conftest import ScriptedProvider, moods_and_quotes


@pytest.fixture
def cli(tmp_path, monkeypatch):
    """Invoke the CLI against a temporary store with no providers configured."""
    for key in ("OPENROUTER_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY",
                "MOODLEAF_FALLBACK_API_KEY"):
        monkeypatch.delenv(key, raising=False)
    runner = CliRunner()

    def invoke(*args, input=None):
        return runner.invoke(app, ["--store", str(tmp_path), *args], input=input)

    return invoke


def _new_entry(cli, body="had a great day at the lake"):
    result = cli("--json", "entry", "new", "alice", "--body", body, "--date", "2026-03-01")
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestEntryCommands:
    """entry new / edit / show / delete."""

    def test_new_and_show(self, cli):
        entry = _new_entry(cli)
        assert entry["version"] == 0
        assert entry["title"] == "2026-03-01"

        result = cli("entry", "show", entry["id"])
        assert result.exit_code == 0
        assert "had a great day at the lake" in result.output
        assert "mood: -" in result.output

    def test_body_from_stdin(self, cli):
        result = cli("--json", "entry", "new", "alice", "--body", "-", input="from a pipe\n")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["body"] == "from a pipe"

    def test_edit_with_expected_version(self, cli):
        entry = _new_entry(cli)
        result = cli("entry", "edit", entry["id"], "--body", "changed my mind", "-e", "0")
        assert result.exit_code == 0
        assert "version 1" in result.output

    def test_stale_version_exits_with_conflict(self, cli):
        entry = _new_entry(cli)
        cli("entry", "edit", entry["id"], "--body", "first edit", "-e", "0")
        result = cli("entry", "edit", entry["id"], "--body", "second tab", "-e", "0")
        assert result.exit_code == 2
        assert "Conflict" in result.output

    def test_title_and_body_in_one_edit(self, cli):
        entry = _new_entry(cli)
        result = cli("--json", "entry", "edit", entry["id"],
                     "--title", "Lake", "--body", "swam twice today")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["title"] == "Lake"
        assert data["version"] == 2

    def test_checked_edit_of_title_and_body_refused(self, cli):
        """A checked edit never leaves half of itself committed."""
        entry = _new_entry(cli)
        result = cli("entry", "edit", entry["id"],
                     "--title", "Lake", "--body", "swam twice today", "-e", "0")
        assert result.exit_code == 1
        assert "separate" in result.output

        shown = json.loads(cli("--json", "entry", "show", entry["id"]).stdout)
        assert shown["version"] == 0
        assert shown["title"] == entry["title"]

    def test_edit_needs_a_change(self, cli):
        entry = _new_entry(cli)
        assert cli("entry", "edit", entry["id"]).exit_code == 1

    def test_delete(self, cli):
        entry = _new_entry(cli)
        assert cli("entry", "delete", entry["id"]).exit_code == 0
        assert cli("entry", "show", entry["id"]).exit_code == 1


class TestPipelineCommands:
    """status, queue, rebuild, quote, config."""

    def test_status_pending(self, cli):
        entry = _new_entry(cli)
        result = cli("--json", "status", entry["id"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["state"] == "pending"
        assert data["queue"]["attempt_count"] == 0

    def test_status_unknown_entry(self, cli):
        assert cli("status", "nope").exit_code == 1

    def test_queue_stats(self, cli):
        _new_entry(cli)
        result = cli("--json", "queue")
        assert result.exit_code == 0
        stats = json.loads(result.stdout)
        assert stats["pending"] == 1
        assert stats["failed_items"] == []

    def test_rebuild(self, cli):
        _new_entry(cli)
        result = cli("--json", "rebuild")
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"entries": 0, "users": 0}

    def test_quote_not_yet_generated(self, cli):
        _new_entry(cli)
        result = cli("quote", "alice")
        assert result.exit_code == 1
        assert "stale" in result.output

    def test_config(self, cli):
        result = cli("--json", "config")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["primary"]["name"] == "ollama"
        assert data["pipeline"]["debounce_seconds"] == 5.0

    def test_tick_runs_both_cadences(self, cli, monkeypatch):
        monkeypatch.setenv("MOODLEAF_DEBOUNCE_SECONDS", "0")
        entry = _new_entry(cli)
        provider = ScriptedProvider("primary", default=moods_and_quotes("8"))

        with patch("moodleaf.providers.base.select_providers",
                   return_value=(provider, None)):
            result = cli("--json", "tick", "--timeout", "10")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["claimed_entries"] == 1
        assert data["claimed_quotes"] == 1
        assert data["finished"]
        assert data["analyzed"] == 1
        assert data["quotes_generated"] == 1

        shown = json.loads(cli("--json", "entry", "show", entry["id"]).stdout)
        assert shown["mood_score"] == 8

    def test_tick_without_provider_claims_nothing(self, cli):
        _new_entry(cli)
        with patch("moodleaf.providers.base.select_providers",
                   side_effect=ValueError("no API key")):
            result = cli("--json", "tick", "--timeout", "1")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["claimed_entries"] == 0
        assert data["claimed_quotes"] == 0
