"""Feishu media handling - type detection, opus conversion and local staging."""

import asyncio
import logging
import mimetypes
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

FFPROBE_TIMEOUT_SECONDS = 10
FFMPEG_TIMEOUT_SECONDS = 30

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tiff", ".ico"}
AUDIO_EXTENSIONS = {".mp3", ".ogg", ".opus", ".wav", ".m4a", ".aac", ".flac"}

_FILE_TYPE_MAP = {
    ".mp4": "mp4",
    ".pdf": "pdf",
    ".doc": "doc",
    ".docx": "doc",
    ".xls": "xls",
    ".xlsx": "xls",
    ".ppt": "ppt",
    ".pptx": "ppt",
}

_MIME_OVERRIDES = {
    ".md": "text/markdown",
    ".opus": "audio/ogg",
    ".ogg": "audio/ogg",
    ".m4a": "audio/mp4",
    ".webp": "image/webp",
}

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._\-\u4e00-\u9fff]")


class MediaConversionError(Exception):
    """Raised when an external media tool fails or times out."""


@dataclass(frozen=True)
class ConvertedAudio:
    path: Path
    duration_ms: int


def is_image_file(name: str) -> bool:
    return Path(name).suffix.lower() in IMAGE_EXTENSIONS


def is_audio_file(name: str) -> bool:
    return Path(name).suffix.lower() in AUDIO_EXTENSIONS


def detect_file_type(file_name: str) -> str:
    """Map a file extension to a Feishu upload file_type."""
    return _FILE_TYPE_MAP.get(Path(file_name).suffix.lower(), "stream")


def guess_mime_type(file_name: str) -> str:
    ext = Path(file_name).suffix.lower()
    if ext in _MIME_OVERRIDES:
        return _MIME_OVERRIDES[ext]
    mime_type, _ = mimetypes.guess_type(file_name)
    return mime_type or "application/octet-stream"


def safe_file_name(file_name: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", file_name)


def save_download(workspace: str | None, file_name: str, content: bytes) -> Path:
    """Write downloaded bytes to ``<workspace>/downloads/<ts>-<safe name>``."""
    base_dir = Path(workspace) if workspace else Path.cwd()
    download_dir = base_dir / "downloads"
    download_dir.mkdir(parents=True, exist_ok=True)
    path = download_dir / f"{int(time.time() * 1000)}-{safe_file_name(file_name)}"
    path.write_bytes(content)
    return path


async def _run(args: list[str], timeout: float) -> bytes:
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise MediaConversionError(f"{args[0]} timed out after {timeout}s") from None
    if process.returncode != 0:
        raise MediaConversionError(
            f"{args[0]} exited with {process.returncode}: {stderr.decode(errors='ignore')[:300]}"
        )
    return stdout


async def probe_duration_ms(path: Path) -> int:
    """Audio duration in milliseconds, or 0 when ffprobe fails."""
    try:
        stdout = await _run(
            [
                "ffprobe",
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "csv=p=0",
                str(path),
            ],
            FFPROBE_TIMEOUT_SECONDS,
        )
        return int(float(stdout.decode().strip()) * 1000 + 0.999)
    except (MediaConversionError, ValueError, OSError) as e:
        logger.warning(f"[FeishuMedia] ffprobe failed for {path}: {e}")
        return 0


async def convert_to_opus(path: Path) -> ConvertedAudio:
    """Transcode audio to mono 16 kHz opus, as required for Feishu audio messages."""
    duration_ms = await probe_duration_ms(path)
    output = Path(tempfile.gettempdir()) / f"feishu-audio-{int(time.time() * 1000)}.opus"
    try:
        await _run(
            [
                "ffmpeg",
                "-y",
                "-i",
                str(path),
                "-c:a",
                "libopus",
                "-b:a",
                "32k",
                "-ar",
                "16000",
                "-ac",
                "1",
                str(output),
            ],
            FFMPEG_TIMEOUT_SECONDS,
        )
    except OSError as e:
        raise MediaConversionError(f"ffmpeg unavailable: {e}") from e
    logger.info(
        f"[FeishuMedia] Converted to opus: input={path}, output={output}, duration={duration_ms}ms"
    )
    return ConvertedAudio(path=output, duration_ms=duration_ms)


async def fetch_remote_media(url: str) -> Path:
    """Download an http(s) media URL to a temporary file."""
    async with httpx.AsyncClient(timeout=httpx.Timeout(30.0), follow_redirects=True) as client:
        response = await client.get(url)
        response.raise_for_status()
    name = safe_file_name(Path(httpx.URL(url).path).name or "media")
    path = Path(tempfile.gettempdir()) / f"feishu-media-{int(time.time() * 1000)}-{name}"
    path.write_bytes(response.content)
    return path
