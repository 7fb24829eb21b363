# tests/test_settings.py
from __future__ import annotations

import pytest

from batchflow.settings import EngineSettings


def test_defaults():
    s = EngineSettings.from_env({})
    assert s.max_workers >= 1
    assert (s.backoff_base, s.backoff_max, s.backoff_jitter) == (1.0, 30.0, 0.1)
    assert s.event_queue_size == 1000
    assert s.cancel_grace == 5.0


def test_environment_overrides():
    s = EngineSettings.from_env(
        {
            "BATCHFLOW_MAX_WORKERS": "3",
            "BATCHFLOW_BACKOFF_BASE": "0.5",
            "BATCHFLOW_BACKOFF_MAX": "4",
            "BATCHFLOW_EVENT_QUEUE_SIZE": "64",
            "BATCHFLOW_CANCEL_GRACE": " ",
        }
    )
    assert (s.max_workers, s.backoff_base, s.backoff_max, s.event_queue_size) == (3, 0.5, 4.0, 64)
    assert s.cancel_grace == 5.0


def test_invalid_value_names_the_variable(monkeypatch):
    monkeypatch.setenv("BATCHFLOW_MAX_WORKERS", "many")
    with pytest.raises(ValueError, match="BATCHFLOW_MAX_WORKERS"):
        EngineSettings.from_env()


def test_range_checks():
    with pytest.raises(ValueError):
        EngineSettings(max_workers=0)
    with pytest.raises(ValueError):
        EngineSettings(backoff_jitter=-1)


def test_with_overrides_ignores_none():
    s = EngineSettings(max_workers=2)
    assert s.with_overrides(max_workers=None).max_workers == 2
    assert s.with_overrides(max_workers=7).max_workers == 7
