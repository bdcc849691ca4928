from __future__ import annotations

import pytest
import requests

from meeting_pipeline.common.errors import ErrCode, NonRetriableStageError, ProviderError
from meeting_pipeline.stt import audio


class _Resp:
    def __init__(self, status_code: int, content: bytes = b"") -> None:
        self.status_code = status_code
        self.content = content


def test_validate_source_returns_format() -> None:
    assert audio.validate_source("https://cdn.example.com/rec/standup.M4A?sig=1", 10) == "m4a"


def test_validate_source_rejects_empty_file() -> None:
    with pytest.raises(NonRetriableStageError, match="Пустой"):
        audio.validate_source("/data/a.wav", 0)


def test_read_local_file(tmp_path) -> None:
    path = tmp_path / "call.wav"
    path.write_bytes(b"RIFF" + b"\x00" * 64)

    src = audio.read_source(str(path))

    assert src.filename == "call.wav"
    assert src.format == "wav"
    assert len(src.data) == 68


def test_read_url(monkeypatch) -> None:
    monkeypatch.setattr(audio.requests, "get", lambda url, timeout: _Resp(200, b"abc"))

    src = audio.read_source("https://cdn.example.com/rec/standup.mp3")

    assert src.data == b"abc"
    assert src.filename == "standup.mp3"


def test_url_404_is_not_retriable(monkeypatch) -> None:
    monkeypatch.setattr(audio.requests, "get", lambda url, timeout: _Resp(404))

    with pytest.raises(NonRetriableStageError, match="Audio file not found"):
        audio.read_source("https://cdn.example.com/rec/gone.mp3")


def test_url_server_error_is_retriable(monkeypatch) -> None:
    monkeypatch.setattr(audio.requests, "get", lambda url, timeout: _Resp(503))

    with pytest.raises(ProviderError) as exc:
        audio.read_source("https://cdn.example.com/rec/standup.mp3")
    assert exc.value.code == ErrCode.STORAGE_ERROR


def test_network_error_is_retriable(monkeypatch) -> None:
    def _boom(url, timeout):
        raise requests.ConnectionError("reset")

    monkeypatch.setattr(audio.requests, "get", _boom)

    with pytest.raises(ProviderError):
        audio.read_source("https://cdn.example.com/rec/standup.mp3")
