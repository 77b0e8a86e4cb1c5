"""Tests for the command-line entrypoint."""

import json

import pytest
import structlog

from sleep_sentinel.config import get_settings
from sleep_sentinel.main import main


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    monkeypatch.setenv("SLEEP_SENTINEL_HEALTH_SOURCE", "fitbit")
    monkeypatch.setenv("SLEEP_SENTINEL_LOG_LEVEL", "ERROR")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    structlog.reset_defaults()


def test_check_prints_snapshot(capsys):
    main(["check", "--source", "memory"])
    snapshot = json.loads(capsys.readouterr().out)
    assert snapshot["had_missing_data"] is True
    assert snapshot["decision"] == "missing_data"
    assert snapshot["probability"] is None


def test_check_without_fitbit_token_degrades(capsys):
    main(["check"])
    snapshot = json.loads(capsys.readouterr().out)
    assert snapshot["decision"] == "missing_data"


def test_no_command_prints_help(capsys):
    with pytest.raises(SystemExit):
        main([])
    assert "sleep-sentinel" in capsys.readouterr().out
