"""Unit test environment helpers."""

import pytest


@pytest.fixture(autouse=True)
def _minimal_env(monkeypatch, tmp_path):
    """Point every storage path at the test's temp dir."""
    monkeypatch.setenv("APM_SOURCE_FILE_PATH", str(tmp_path / "source.sqlite"))
    monkeypatch.setenv("APM_DEST_FILE_PATH", str(tmp_path / "dest.sqlite"))
    monkeypatch.setenv("APM_FALLBACK_LOG_PATH", str(tmp_path / "fallback.log"))
    monkeypatch.setenv("APM_DEAD_LETTER_PATH", str(tmp_path / "dead_letter.log"))
    monkeypatch.delenv("APM_SOURCE_URL", raising=False)
    monkeypatch.delenv("APM_DEST_URL", raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_factory_state():
    """Drop cached engines and components after each test."""
    yield
    from apm_worker import factory

    factory.reset_singletons()
