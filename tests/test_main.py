"""Tests for the command line entry point's input handling."""

import json
import logging

import pytest

from probewatch import __main__ as cli


@pytest.fixture
def quiet(monkeypatch):
    """Keep main() from reconfiguring the root logger."""
    monkeypatch.setattr(cli, "configure_logging", lambda level=None: None)


def write_targets(tmp_path, entries):
    path = tmp_path / "targets.json"
    path.write_text(json.dumps(entries), encoding="utf-8")
    return path


class TestMainBadInput:
    """Test that unusable input exits with status 2 before Qt starts."""

    def test_duplicate_target_ids(self, tmp_path, quiet, caplog):
        path = write_targets(
            tmp_path,
            [
                {"id": "a", "host": "a.example"},
                {"id": "a", "host": "b.example"},
            ],
        )

        with caplog.at_level(logging.ERROR, logger=cli.__name__):
            assert cli.main([str(path)]) == cli.EXIT_BAD_INPUT

        assert "duplicate target id: a" in caplog.text

    def test_missing_targets_file(self, tmp_path, quiet):
        assert cli.main([str(tmp_path / "missing.json")]) == cli.EXIT_BAD_INPUT

    def test_unknown_target_kind(self, tmp_path, quiet):
        path = write_targets(tmp_path, [{"id": "a", "host": "a.example", "probe_type": "http"}])

        assert cli.main([str(path)]) == cli.EXIT_BAD_INPUT

    def test_invalid_environment(self, tmp_path, quiet, monkeypatch):
        path = write_targets(tmp_path, [{"id": "a", "host": "a.example"}])
        monkeypatch.setenv("PROBEWATCH_PING_COUNT", "many")

        assert cli.main([str(path)]) == cli.EXIT_BAD_INPUT
