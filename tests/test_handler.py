from unittest.mock import AsyncMock, Mock

import pytest
from telegram.constants import ParseMode

import youtube_bot
from conftest import FakeResponse, fake_persist, make_metadata

MB = 1024 * 1024
VIDEO_URL = "https://youtu.be/dQw4w9WgXcQ"


def make_update(chat, text):
    message = Mock()
    message.text = text
    message.reply_text = AsyncMock()
    update = Mock()
    update.effective_message = message
    update.effective_chat = chat
    return update


@pytest.mark.asyncio
async def test_invalid_link_is_rejected_before_network(monkeypatch, chat):
    resolve = AsyncMock()
    monkeypatch.setattr(youtube_bot, "resolve_video_info", resolve)
    update = make_update(chat, "not-a-youtube-link")

    await youtube_bot.handle_message(update, Mock())

    update.effective_message.reply_text.assert_awaited_once_with(youtube_bot.INVALID_LINK_TEXT)
    resolve.assert_not_awaited()
    chat.send_message.assert_not_awaited()
    assert youtube_bot.failure_counts["invalid_url"] == 1


@pytest.mark.asyncio
async def test_extraction_error_is_reported_in_status(monkeypatch, chat, status_message):
    resolve = AsyncMock(side_effect=youtube_bot.ExtractionError("video is private"))
    deliver = AsyncMock()
    monkeypatch.setattr(youtube_bot, "resolve_video_info", resolve)
    monkeypatch.setattr(youtube_bot, "deliver", deliver)

    await youtube_bot.handle_message(make_update(chat, VIDEO_URL), Mock())

    chat.send_message.assert_awaited_once_with(youtube_bot.FETCHING_TEXT)
    resolve.assert_awaited_once_with(VIDEO_URL)
    deliver.assert_not_awaited()
    status_message.edit_text.assert_awaited_once_with("❌ Could not fetch video info: video is private")
    status_message.delete.assert_not_awaited()
    assert youtube_bot.failure_counts["extraction"] == 1


@pytest.mark.asyncio
async def test_short_video_success_deletes_status(monkeypatch, chat, status_message, scratch_dir):
    monkeypatch.setattr(youtube_bot, "resolve_video_info", AsyncMock(return_value=make_metadata(duration_seconds=40)))
    monkeypatch.setattr(youtube_bot, "open_media_stream", AsyncMock(return_value=FakeResponse()))

    await youtube_bot.handle_message(make_update(chat, VIDEO_URL), Mock())

    status_message.delete.assert_awaited_once()
    edits = [c.args[0] for c in status_message.edit_text.await_args_list]
    assert not any(text.startswith("❌") for text in edits)
    assert chat.send_message.await_args_list[-1].args == (youtube_bot.STREAMED_TEXT,)
    assert not youtube_bot.failure_counts


@pytest.mark.asyncio
async def test_oversize_video_leaves_error_in_status(monkeypatch, chat, status_message, scratch_dir):
    monkeypatch.setattr(youtube_bot, "resolve_video_info", AsyncMock(return_value=make_metadata(duration_seconds=900)))
    monkeypatch.setattr(youtube_bot, "persist_media", fake_persist(49 * MB))

    await youtube_bot.handle_message(make_update(chat, VIDEO_URL), Mock())

    status_message.edit_text.assert_awaited_with("📦 Video too large: 49.0 MB (max 48 MB)")
    status_message.delete.assert_not_awaited()
    chat.send_video.assert_not_awaited()
    assert list(scratch_dir.glob("*")) == []
    assert youtube_bot.failure_counts["too_large"] == 1


@pytest.mark.asyncio
async def test_unexpected_error_is_contained(monkeypatch, chat, status_message):
    monkeypatch.setattr(youtube_bot, "resolve_video_info", AsyncMock(return_value=make_metadata()))
    monkeypatch.setattr(youtube_bot, "deliver", AsyncMock(side_effect=ValueError("boom")))

    await youtube_bot.handle_message(make_update(chat, VIDEO_URL), Mock())

    status_message.edit_text.assert_awaited_once_with("❌ Failed to process video: boom")
    assert youtube_bot.failure_counts["unexpected"] == 1


@pytest.mark.asyncio
async def test_message_without_text_is_ignored(chat):
    update = make_update(chat, None)

    await youtube_bot.handle_message(update, Mock())

    update.effective_message.reply_text.assert_not_awaited()
    chat.send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_command_sends_welcome(chat):
    update = make_update(chat, "/start")

    await youtube_bot.handle_start(update, Mock())

    update.effective_message.reply_text.assert_awaited_once_with(
        youtube_bot.WELCOME_TEXT, parse_mode=ParseMode.MARKDOWN
    )


@pytest.mark.asyncio
async def test_startup_and_shutdown_manage_scratch_dir(scratch_dir):
    await youtube_bot.on_startup(Mock())
    assert scratch_dir.is_dir()
    (scratch_dir / "leftover.mp4").write_bytes(b"x")

    await youtube_bot.on_shutdown(Mock())

    assert not scratch_dir.exists()


def test_build_application_registers_handlers():
    app = youtube_bot.build_application("123456:TEST-TOKEN")

    handler_types = {type(handler).__name__ for handler in app.handlers[0]}
    assert handler_types == {"CommandHandler", "MessageHandler"}
    assert youtube_bot.log_update_error in app.error_handlers
    assert app.concurrent_updates > 1
