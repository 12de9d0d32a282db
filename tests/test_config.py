"""Tests for configuration precedence."""

import pytest

from callinsights.config import ConfigManager


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("MAX_WORKERS", "OPENAI_API_KEY", "QA_GRADE_SCALE"):
        monkeypatch.delenv(key, raising=False)


def test_default_when_unset():
    assert ConfigManager.resolve("MAX_WORKERS") == ("2", "default")
    assert ConfigManager.get_int("MAX_WORKERS") == 2


def test_env_beats_default(monkeypatch):
    monkeypatch.setenv("MAX_WORKERS", "8")

    assert ConfigManager.resolve("MAX_WORKERS") == ("8", "env")


def test_override_beats_env(monkeypatch):
    monkeypatch.setenv("MAX_WORKERS", "8")

    assert ConfigManager.resolve("MAX_WORKERS", 4) == (4, "override")


def test_empty_values_fall_through(monkeypatch):
    monkeypatch.setenv("MAX_WORKERS", "")

    assert ConfigManager.resolve("MAX_WORKERS", "") == ("2", "default")


def test_get_json():
    assert ConfigManager.get_json("QA_GRADE_SCALE") is None
    assert ConfigManager.get_json("QA_GRADE_SCALE", "[[90, \"A\"]]") == [[90, "A"]]


def test_snapshot_masks_secrets(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")

    snapshot = ConfigManager.snapshot()

    assert snapshot["OPENAI_API_KEY"] == {"value": "***", "source": "env"}
    assert snapshot["MAX_WORKERS"] == {"value": "2", "source": "default"}
