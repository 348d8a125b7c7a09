import os

import pytest

from batchrelay.utils.api import get_api_key_from_env
from batchrelay.utils.files import read_jsonl_file, write_jsonl_file


@pytest.fixture
def mock_data():
    return [
        {"correlation_id": "france", "user_prompt": "Capital of France?"},
        {"correlation_id": "italy", "user_prompt": "Capital of Italy?"},
    ]


def test_write_jsonl_file_creates_parent_dirs(tmp_path, mock_data):
    file_path = tmp_path / "nested" / "requests.jsonl"
    write_jsonl_file(file_path=file_path, data=mock_data)
    assert os.path.exists(file_path)
    assert read_jsonl_file(file_path) == mock_data


def test_read_jsonl_file_skips_blank_lines(tmp_path, mock_data):
    file_path = tmp_path / "requests.jsonl"
    file_path.write_text('\n{"correlation_id": "france"}\n\n   \n{"correlation_id": "italy"}\n')
    assert read_jsonl_file(file_path) == [{"correlation_id": "france"}, {"correlation_id": "italy"}]


def test_api_key_lookup(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "  sk-test  ")
    assert get_api_key_from_env("openai") == "sk-test"

    monkeypatch.delenv("OPENAI_API_KEY")
    assert get_api_key_from_env("openai") is None
