import pytest


@pytest.fixture(autouse=True)
def test_set_env(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.delenv("BATCHRELAY_ANTHROPIC_MODEL", raising=False)
    monkeypatch.delenv("BATCHRELAY_OPENAI_MODEL", raising=False)
