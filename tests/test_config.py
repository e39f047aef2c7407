import importlib

import pytest

import pipeline.config as config


@pytest.fixture
def reload_config(monkeypatch):
    """
    Reload pipeline.config under a patched environment, then restore it.
    """
    yield lambda: importlib.reload(config)
    monkeypatch.undo()
    importlib.reload(config)


def test_defaults(monkeypatch, reload_config):
    for name in ("PIPELINE_WORKER_COUNT", "STREAM_INCLUDE_PDF_TEXT", "GEMINI_MAX_RETRIES", "ALLOWED_ORIGINS"):
        monkeypatch.delenv(name, raising=False)
    cfg = reload_config()

    assert cfg.PIPELINE_WORKER_COUNT == 3
    assert cfg.STREAM_INCLUDE_PDF_TEXT is False
    assert cfg.GEMINI_MAX_RETRIES == 0
    assert cfg.ALLOWED_ORIGINS == ["http://localhost:5173", "http://localhost:3000"]


def test_worker_count_is_at_least_one(monkeypatch, reload_config):
    monkeypatch.setenv("PIPELINE_WORKER_COUNT", "0")
    assert reload_config().PIPELINE_WORKER_COUNT == 1


def test_flags_and_lists_parse_from_env(monkeypatch, reload_config):
    monkeypatch.setenv("STREAM_INCLUDE_PDF_TEXT", "Yes")
    monkeypatch.setenv("ALLOWED_ORIGINS", " https://a.example , ,https://b.example")
    monkeypatch.setenv("GEMINI_TIMEOUT_SECONDS", "1")
    monkeypatch.setenv("VANCOUVER_API_BASE_URL", "https://api.example/")
    cfg = reload_config()

    assert cfg.STREAM_INCLUDE_PDF_TEXT is True
    assert cfg.ALLOWED_ORIGINS == ["https://a.example", "https://b.example"]
    assert cfg.GEMINI_TIMEOUT_SECONDS == 5
    assert cfg.VANCOUVER_API_BASE_URL == "https://api.example"
