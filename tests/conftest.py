import io
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

import youtube_bot


class FakeResponse:
    """Stands in for a streamed requests.Response."""

    def __init__(self, payload: bytes = b"\x00" * 1024):
        self.raw = io.BytesIO(payload)
        self.close = Mock()


def make_status_message():
    status_message = Mock()
    status_message.edit_text = AsyncMock()
    status_message.delete = AsyncMock()
    return status_message


def make_metadata(duration_seconds: int = 60, title: str = "Test video") -> youtube_bot.VideoMetadata:
    return youtube_bot.VideoMetadata(
        video_id="dQw4w9WgXcQ",
        title=title,
        duration_seconds=duration_seconds,
        info={"id": "dQw4w9WgXcQ", "title": title, "duration": duration_seconds},
    )


def fake_persist(size_bytes: int):
    calls = []

    async def _persist(metadata, destination):
        calls.append((metadata, destination))
        with destination.open("wb") as output:
            output.truncate(size_bytes)

    _persist.calls = calls
    return _persist


@pytest.fixture
def status_message():
    return make_status_message()


@pytest.fixture
def chat(status_message):
    chat = Mock()
    chat.id = 4242
    chat.send_message = AsyncMock(return_value=status_message)
    chat.send_video = AsyncMock()
    return chat


@pytest.fixture
def request_():
    return youtube_bot.VideoRequest(url="https://www.youtube.com/watch?v=dQw4w9WgXcQ")


@pytest_asyncio.fixture
async def status(chat):
    reporter = youtube_bot.StatusReporter(chat)
    await reporter.start(youtube_bot.FETCHING_TEXT)
    return reporter


@pytest.fixture(autouse=True)
def scratch_dir(tmp_path, monkeypatch):
    directory = tmp_path / "temp"
    monkeypatch.setattr(youtube_bot, "TEMP_DIR", directory)
    return directory


@pytest.fixture(autouse=True)
def reset_failure_counts():
    youtube_bot.failure_counts.clear()
    yield
    youtube_bot.failure_counts.clear()
