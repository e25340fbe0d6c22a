"""
Smart YouTube bot: short videos are streamed straight into Telegram,
longer ones are downloaded, size-checked and uploaded as a file.

Usage (local):
  export BOT_TOKEN="..."
  python youtube_bot.py
"""

import asyncio
import collections
import contextlib
import copy
import dataclasses
import logging
import os
import re
import shutil
import time
import traceback
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import requests
import urllib3
import yt_dlp
from dotenv import load_dotenv
from telegram import InputFile, Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

load_dotenv()

# -------------------------
# Configuration
# -------------------------
BOT_TOKEN = os.getenv("BOT_TOKEN", "").strip()
TEMP_DIR = Path(os.getenv("TEMP_DIR", str(Path(__file__).resolve().parent / "temp")))
STREAM_MAX_DURATION_SECONDS = int(os.getenv("STREAM_MAX_DURATION_SECONDS", "120"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(48 * 1024 * 1024)))
HTTP_CONNECT_TIMEOUT_SECONDS = float(os.getenv("HTTP_CONNECT_TIMEOUT_SECONDS", "15"))
HTTP_READ_TIMEOUT_SECONDS = float(os.getenv("HTTP_READ_TIMEOUT_SECONDS", "60"))
HEARTBEAT_INTERVAL_SECONDS = int(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "300"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
TITLE_DISPLAY_LIMIT = 50
STREAM_FORMAT = "18/best[height<=360][acodec!=none][vcodec!=none]/best[acodec!=none][vcodec!=none]"
DOWNLOAD_FORMAT = "best[ext=mp4][acodec!=none][vcodec!=none]/22/18"
CHROME_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
REQUEST_HEADERS = {
    "User-Agent": CHROME_USER_AGENT,
    "Referer": "https://www.youtube.com/",
}

# -------------------------
# Logging
# -------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("youtube-bot")
logging.getLogger("telegram").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

# -------------------------
# User-facing texts
# -------------------------
WELCOME_TEXT = (
    "🎥 *Smart YouTube Bot*\n\n"
    "• Short videos → stream quickly\n"
    "• Long videos → download & send\n\n"
    "Send a YouTube link."
)
INVALID_LINK_TEXT = "❌ Invalid YouTube link"
FETCHING_TEXT = "⏳ Fetching video info..."
STREAMED_TEXT = "✨ Streamed successfully!"
DOWNLOADED_TEXT = "✅ Downloaded & sent successfully!"

# -------------------------
# Models
# -------------------------
STREAM = "stream"
DOWNLOAD = "download"

STREAMED = "streamed"
DOWNLOADED = "downloaded"
FAILED = "failed"

TOO_LARGE = "too_large"
TRANSFER = "transfer"
TRANSPORT = "transport"


@dataclasses.dataclass(frozen=True)
class VideoRequest:
    url: str
    requested_at: float = dataclasses.field(default_factory=time.time)


@dataclasses.dataclass(frozen=True)
class VideoMetadata:
    video_id: str
    title: str
    duration_seconds: int
    info: dict = dataclasses.field(default_factory=dict, repr=False, compare=False)


@dataclasses.dataclass(frozen=True)
class DeliveryOutcome:
    status: str
    reason: str | None = None
    error_kind: str | None = None
    size_bytes: int | None = None
    attempts: tuple[str, ...] = ()

    @property
    def failed(self) -> bool:
        return self.status == FAILED

    @classmethod
    def failure(cls, error_kind: str, reason: str, size_bytes: int | None = None) -> "DeliveryOutcome":
        return cls(status=FAILED, reason=reason, error_kind=error_kind, size_bytes=size_bytes)


@dataclasses.dataclass
class TempFile:
    path: Path
    size_bytes: int = 0

    def measure(self) -> int:
        self.size_bytes = self.path.stat().st_size
        return self.size_bytes

    def discard(self) -> None:
        self.path.unlink(missing_ok=True)
        logger.info("Temp file removed: %s", self.path.name)


class DeliveryError(RuntimeError):
    pass


class InvalidURLError(DeliveryError):
    pass


class ExtractionError(DeliveryError):
    pass


class TransferError(DeliveryError):
    pass


class TransportError(DeliveryError):
    pass


# -------------------------
# Metrics
# -------------------------
failure_counts: collections.Counter = collections.Counter()


def record_failure(kind: str) -> None:
    failure_counts[kind] += 1


# -------------------------
# URL validation
# -------------------------
YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com"}
SHORT_HOSTS = {"youtu.be", "www.youtu.be"}
VIDEO_ID_REGEX = re.compile(r"^[A-Za-z0-9_-]{11}$")
PATH_ID_PREFIXES = ("/shorts/", "/embed/", "/live/", "/v/")


def extract_video_id(url: str) -> str | None:
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https"):
        return None
    host = parsed.netloc.lower().split(":")[0]
    path = parsed.path

    candidate = None
    if host in SHORT_HOSTS:
        candidate = path.strip("/").split("/")[0]
    elif host in YOUTUBE_HOSTS:
        if path.rstrip("/") == "/watch":
            candidate = (parse_qs(parsed.query).get("v") or [""])[0]
        else:
            for prefix in PATH_ID_PREFIXES:
                if path.startswith(prefix):
                    candidate = path[len(prefix):].split("/")[0]
                    break

    if candidate and VIDEO_ID_REGEX.match(candidate):
        return candidate
    return None


def validate_url(url: str) -> bool:
    return extract_video_id(url) is not None


def parse_video_request(text: str) -> VideoRequest:
    url = (text or "").strip()
    if not validate_url(url):
        raise InvalidURLError(f"not a YouTube video link: {url[:100]!r}")
    return VideoRequest(url=url)


# -------------------------
# Formatting
# -------------------------
def truncate_title(title: str) -> str:
    return title[:TITLE_DISPLAY_LIMIT]


def format_duration(seconds: int) -> str:
    return f"{seconds // 60}:{seconds % 60:02d}"


def format_megabytes(size_bytes: int) -> str:
    return f"{size_bytes / (1024 * 1024):.1f} MB"


def build_caption(metadata: VideoMetadata, size_bytes: int | None = None) -> str:
    caption = f"🎥 {metadata.title}\n⏱️ {format_duration(metadata.duration_seconds)}"
    if size_bytes is not None:
        caption += f"\n📦 {format_megabytes(size_bytes)}"
    return caption


def build_temp_filename(title: str) -> str:
    safe_title = re.sub(r"[^A-Za-z0-9]", "_", title)
    return f"{time.time_ns()}-{safe_title}.mp4"


def _normalize_error_reason(raw_reason: str) -> str:
    reason = (raw_reason or "").strip()
    reason = re.sub(r"^ERROR:\s*", "", reason)
    if not reason:
        return "unknown error"
    reason = reason.replace("\n", " ").replace("\r", " ")
    reason = re.sub(r"\s+", " ", reason).strip()
    return reason[:180]


def describe_failure(err: BaseException) -> str:
    error_chain = [str(err or "")]
    if getattr(err, "__cause__", None):
        error_chain.append(str(err.__cause__))
    error_text = " | ".join(error_chain).lower()

    if any(
        phrase in error_text
        for phrase in ("confirm your age", "age-restricted", "age restricted", "inappropriate for some users")
    ):
        return "video is age-restricted"
    if "private video" in error_text:
        return "video is private"
    if "available in your country" in error_text or "blocked it in your country" in error_text:
        return "video is not available in this region"
    if any(
        phrase in error_text
        for phrase in ("confirm you're not a bot", "confirm you are not a bot", "login required", "sign in")
    ):
        return "YouTube requires sign-in for this video"
    if "video unavailable" in error_text:
        return "video is unavailable"
    if "requested format is not available" in error_text:
        return "no format with both audio and video is available"

    return _normalize_error_reason(error_chain[-1] or error_chain[0])


def build_failure_text(outcome: DeliveryOutcome) -> str:
    if outcome.error_kind == TOO_LARGE:
        limit_mb = MAX_UPLOAD_BYTES // (1024 * 1024)
        return f"📦 Video too large: {format_megabytes(outcome.size_bytes or 0)} (max {limit_mb} MB)"
    if outcome.error_kind == TRANSPORT:
        return f"❌ Upload to Telegram failed: {outcome.reason}"
    return f"❌ Download failed: {outcome.reason}"


# -------------------------
# Extraction
# -------------------------
def _base_ydl_opts(format_selector: str | None = None) -> dict:
    ydl_opts = {
        "noplaylist": True,
        "http_headers": dict(REQUEST_HEADERS),
        "quiet": True,
        "no_warnings": True,
        "no_color": True,
    }
    if format_selector:
        ydl_opts["format"] = format_selector
    return ydl_opts


def canonical_video_url(url: str) -> str:
    video_id = extract_video_id(url)
    if not video_id:
        return url.strip()
    # drops list/index parameters, which make yt-dlp hand back an unresolved playlist reference
    return f"https://www.youtube.com/watch?v={video_id}"


async def resolve_video_info(url: str) -> VideoMetadata:
    ydl_opts = _base_ydl_opts()
    target_url = canonical_video_url(url)

    def _run_extract() -> dict:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            return ydl.extract_info(target_url, download=False, process=False)

    try:
        info = await asyncio.to_thread(_run_extract)
    except Exception as err:
        raise ExtractionError(describe_failure(err)) from err

    if not isinstance(info, dict) or info.get("_type") in ("playlist", "url", "url_transparent"):
        raise ExtractionError("link does not point to a single video")
    if info.get("is_live") or info.get("live_status") in ("is_live", "is_upcoming"):
        raise ExtractionError("live streams are not supported")

    return VideoMetadata(
        video_id=str(info.get("id") or ""),
        title=truncate_title(info.get("title") or "Untitled"),
        duration_seconds=max(0, int(info.get("duration") or 0)),
        info=info,
    )


def select_strategy(duration_seconds: int) -> str:
    if duration_seconds <= STREAM_MAX_DURATION_SECONDS:
        return STREAM
    return DOWNLOAD


async def open_media_stream(metadata: VideoMetadata, format_selector: str) -> requests.Response:
    ydl_opts = _base_ydl_opts(format_selector)

    def _open() -> requests.Response:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            selected = ydl.process_ie_result(copy.deepcopy(metadata.info), download=False)
        chosen = (selected.get("requested_downloads") or [selected])[0]
        media_url = chosen.get("url")
        if not media_url:
            raise TransferError("no media URL for the selected format")

        headers = {**REQUEST_HEADERS, **(chosen.get("http_headers") or {})}
        response = requests.get(
            media_url,
            headers=headers,
            stream=True,
            timeout=(HTTP_CONNECT_TIMEOUT_SECONDS, HTTP_READ_TIMEOUT_SECONDS),
        )
        try:
            response.raise_for_status()
        except requests.HTTPError:
            response.close()
            raise
        response.raw.decode_content = True
        logger.info("Media stream opened: video_id=%s format=%s", metadata.video_id, chosen.get("format_id"))
        return response

    try:
        return await asyncio.to_thread(_open)
    except (yt_dlp.utils.YoutubeDLError, requests.RequestException) as err:
        raise TransferError(describe_failure(err)) from err


async def persist_media(metadata: VideoMetadata, destination: Path) -> None:
    ydl_opts = _base_ydl_opts(DOWNLOAD_FORMAT)
    ydl_opts.update(
        {
            # literal path, so template markers must be escaped
            "outtmpl": str(destination).replace("%", "%%"),
            "nopart": True,
            "overwrites": True,
            "noprogress": True,
        }
    )

    def _run() -> None:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            ydl.process_ie_result(copy.deepcopy(metadata.info), download=True)

    try:
        await asyncio.to_thread(_run)
    except (yt_dlp.utils.YoutubeDLError, OSError) as err:
        raise TransferError(describe_failure(err)) from err

    if not destination.exists():
        raise TransferError("downloaded file not found after yt-dlp run")


@contextlib.contextmanager
def temp_media_file(title: str, directory: Path):
    directory.mkdir(parents=True, exist_ok=True)
    temp_file = TempFile(path=directory / build_temp_filename(title))
    try:
        yield temp_file
    finally:
        temp_file.discard()


# -------------------------
# Status reporting
# -------------------------
class StatusReporter:
    """Owns the single progress message of one request."""

    def __init__(self, chat):
        self.chat = chat
        self.message = None

    async def start(self, text: str) -> None:
        self.message = await self.chat.send_message(text)

    async def update(self, text: str) -> None:
        if not self.message:
            return
        try:
            await self.message.edit_text(text)
        except TelegramError as edit_err:
            logger.info("Could not edit status message: %s", edit_err)

    async def fail(self, text: str) -> None:
        await self.update(text)

    async def clear(self, final_text: str) -> None:
        if not self.message:
            return
        try:
            await self.message.delete()
            self.message = None
        except TelegramError as delete_err:
            logger.info("Could not delete status message: %s", delete_err)
            await self.update(final_text)


async def _send_notice(chat, text: str) -> None:
    try:
        await chat.send_message(text)
    except TelegramError as send_err:
        logger.info("Could not send notice: %s", send_err)


# -------------------------
# Delivery
# -------------------------
async def stream_deliver(chat, request: VideoRequest, metadata: VideoMetadata, status: StatusReporter) -> DeliveryOutcome:
    await status.update(f"🎥 {metadata.title}\n📡 Streaming...")
    source = await open_media_stream(metadata, STREAM_FORMAT)
    try:
        # InputFile reads the whole stream, keep that off the event loop
        video = await asyncio.to_thread(InputFile, source.raw, filename=f"{metadata.video_id or 'video'}.mp4")
        await chat.send_video(video=video, caption=build_caption(metadata), supports_streaming=True)
    except (requests.RequestException, urllib3.exceptions.HTTPError, OSError) as err:
        raise TransferError(describe_failure(err)) from err
    except TelegramError as err:
        raise TransportError(describe_failure(err)) from err
    finally:
        source.close()

    logger.info("Streamed video: url=%s duration=%ss", request.url, metadata.duration_seconds)
    await status.clear(STREAMED_TEXT)
    await _send_notice(chat, STREAMED_TEXT)
    return DeliveryOutcome(status=STREAMED)


async def download_deliver(
    chat,
    request: VideoRequest,
    metadata: VideoMetadata,
    status: StatusReporter,
    temp_dir: Path | None = None,
) -> DeliveryOutcome:
    await status.update(f"🎥 {metadata.title}\n⬇️ Downloading...")
    with temp_media_file(metadata.title, temp_dir or TEMP_DIR) as temp_file:
        try:
            await persist_media(metadata, temp_file.path)
        except TransferError as err:
            logger.warning("Download failed: url=%s err=%s", request.url, err)
            return DeliveryOutcome.failure(TRANSFER, str(err))

        size_bytes = temp_file.measure()
        if size_bytes > MAX_UPLOAD_BYTES:
            logger.info("Rejecting oversize video: url=%s size_bytes=%s limit=%s", request.url, size_bytes, MAX_UPLOAD_BYTES)
            return DeliveryOutcome.failure(TOO_LARGE, "video too large", size_bytes=size_bytes)

        await status.update(f"🎥 {metadata.title}\n⬆️ Uploading {format_megabytes(size_bytes)}...")
        try:
            with temp_file.path.open("rb") as video_file:
                await chat.send_video(
                    video=video_file,
                    caption=build_caption(metadata, size_bytes),
                    supports_streaming=True,
                )
        except TelegramError as err:
            logger.warning("Upload failed: url=%s err=%s", request.url, err)
            return DeliveryOutcome.failure(TRANSPORT, describe_failure(err), size_bytes=size_bytes)

    logger.info("Downloaded and sent video: url=%s size_bytes=%s", request.url, size_bytes)
    await status.clear(DOWNLOADED_TEXT)
    await _send_notice(chat, DOWNLOADED_TEXT)
    return DeliveryOutcome(status=DOWNLOADED, size_bytes=size_bytes)


async def deliver(chat, request: VideoRequest, metadata: VideoMetadata, status: StatusReporter) -> DeliveryOutcome:
    strategy = select_strategy(metadata.duration_seconds)
    logger.info(
        "Delivery strategy: url=%s duration=%ss strategy=%s",
        request.url,
        metadata.duration_seconds,
        strategy,
    )

    attempts: list[str] = []
    if strategy == STREAM:
        attempts.append(STREAM)
        try:
            outcome = await stream_deliver(chat, request, metadata, status)
            return dataclasses.replace(outcome, attempts=tuple(attempts))
        except Exception as err:
            record_failure("stream_fallback")
            logger.warning("Stream failed, falling back to download: url=%s err=%s", request.url, err)

    # terminal attempt, no way back to streaming
    attempts.append(DOWNLOAD)
    outcome = await download_deliver(chat, request, metadata, status)
    return dataclasses.replace(outcome, attempts=tuple(attempts))


# -------------------------
# Handlers
# -------------------------
async def handle_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message:
        await message.reply_text(WELCOME_TEXT, parse_mode=ParseMode.MARKDOWN)


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if not message or not message.text:
        return

    chat = update.effective_chat
    if not chat:
        return

    try:
        request = parse_video_request(message.text)
    except InvalidURLError as err:
        record_failure("invalid_url")
        logger.info("Rejected link: chat_id=%s reason=%s", chat.id, err)
        await message.reply_text(INVALID_LINK_TEXT)
        return

    status = StatusReporter(chat)
    await status.start(FETCHING_TEXT)
    logger.info("Request started: chat_id=%s url=%s", chat.id, request.url)

    try:
        metadata = await resolve_video_info(request.url)
        outcome = await deliver(chat, request, metadata, status)
    except ExtractionError as err:
        record_failure("extraction")
        logger.warning("Could not fetch video info: url=%s err=%s", request.url, err)
        await status.fail(f"❌ Could not fetch video info: {err}")
        return
    except Exception as e:
        record_failure("unexpected")
        logger.error("Error handling URL %s: %s", request.url, e)
        logger.error(traceback.format_exc())
        await status.fail(f"❌ Failed to process video: {describe_failure(e)}")
        return

    if outcome.failed:
        record_failure(outcome.error_kind or "unexpected")
        logger.warning(
            "Request failed: url=%s kind=%s reason=%s attempts=%s",
            request.url,
            outcome.error_kind,
            outcome.reason,
            ",".join(outcome.attempts),
        )
        await status.fail(build_failure_text(outcome))
        return

    logger.info(
        "Request completed: url=%s status=%s attempts=%s elapsed=%.1fs",
        request.url,
        outcome.status,
        ",".join(outcome.attempts),
        time.time() - request.requested_at,
    )


async def log_update_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing update: %s", context.error, exc_info=context.error)


def log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    logger.error("Unhandled asyncio error: %s", context.get("message"), exc_info=context.get("exception"))


async def log_heartbeat(_: ContextTypes.DEFAULT_TYPE) -> None:
    logger.info("Bot is listening... failures=%s", dict(failure_counts) or "none")


# -------------------------
# Lifecycle
# -------------------------
async def on_startup(application: Application) -> None:
    TEMP_DIR.mkdir(parents=True, exist_ok=True)
    asyncio.get_running_loop().set_exception_handler(log_loop_exception)
    logger.info("Scratch directory ready: %s", TEMP_DIR)


async def on_shutdown(application: Application) -> None:
    if TEMP_DIR.exists():
        shutil.rmtree(TEMP_DIR)
        logger.info("Scratch directory removed: %s", TEMP_DIR)


def build_application(token: str) -> Application:
    app = (
        Application.builder()
        .token(token)
        .concurrent_updates(True)
        .connect_timeout(60)
        .read_timeout(300)
        .write_timeout(300)
        .pool_timeout(60)
        .post_init(on_startup)
        .post_shutdown(on_shutdown)
        .build()
    )

    app.add_handler(CommandHandler("start", handle_start))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))
    app.add_error_handler(log_update_error)

    app.job_queue.run_repeating(log_heartbeat, interval=HEARTBEAT_INTERVAL_SECONDS, first=0)
    return app


# -------------------------
# Main
# -------------------------
def main() -> None:
    if not BOT_TOKEN:
        raise RuntimeError("BOT_TOKEN is required.")

    app = build_application(BOT_TOKEN)
    logger.info("Smart YouTube Bot started. Polling and waiting for updates...")
    app.run_polling(close_loop=False)


if __name__ == "__main__":
    main()
