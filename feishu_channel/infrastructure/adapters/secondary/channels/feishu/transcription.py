"""Speech-to-text for inbound voice messages via an external command."""

import asyncio
import logging
import shlex
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

TRANSCRIBE_TIMEOUT_SECONDS = 30.0


class AudioTranscriber:
    """Runs a configured STT command on an audio file and returns its stdout.

    The command receives the audio file path as its last argument. A
    timeout, a non-zero exit or an empty transcript all yield None.
    """

    def __init__(
        self,
        command: str = "python3 /usr/local/bin/stt.py",
        timeout_seconds: float = TRANSCRIBE_TIMEOUT_SECONDS,
    ) -> None:
        self._argv = shlex.split(command)
        self._timeout_seconds = timeout_seconds

    async def transcribe_bytes(self, audio: bytes, message_id: str) -> str | None:
        """Write audio to a temporary .ogg file and transcribe it."""
        path = Path(tempfile.gettempdir()) / f"feishu-audio-{message_id}.ogg"
        try:
            path.write_bytes(audio)
            return await self.transcribe(path)
        finally:
            path.unlink(missing_ok=True)

    async def transcribe(self, path: Path) -> str | None:
        if not self._argv:
            logger.error("[Transcriber] No transcription command configured")
            return None
        try:
            process = await asyncio.create_subprocess_exec(
                *self._argv,
                str(path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"[Transcriber] Failed to start {self._argv[0]}: {e}")
            return None

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"[Transcriber] Timed out after {self._timeout_seconds}s")
            return None

        if process.returncode != 0:
            logger.error(
                f"[Transcriber] Exited with {process.returncode}: "
                f"{stderr.decode(errors='ignore')[:300]}"
            )
            return None

        text = stdout.decode(errors="ignore").strip()
        if not text:
            logger.error("[Transcriber] STT returned empty result")
            return None
        logger.info(f"[Transcriber] STT result: {text[:80]}")
        return text
