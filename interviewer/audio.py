from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from interviewer.logging_utils import log_important

logger = logging.getLogger(__name__)

Emit = Callable[[str, dict], Awaitable[Any]]


@dataclass
class AudioBuffers:
    """
    Two accumulators for one session.

    ``pending`` holds the current utterance and is emptied by every stop
    signal. ``archive`` (interview only) keeps every chunk since join so the
    whole recording can be stored once the session ends.
    """

    archive_enabled: bool = False
    max_pending_bytes: int | None = None
    label: str = ""
    pending: list[bytes] = field(default_factory=list)
    archive: list[bytes] = field(default_factory=list)
    pending_bytes: int = 0
    archive_bytes: int = 0

    def append(self, chunk: bytes) -> bool:
        """Buffer one chunk. Returns False when the pending utterance is full."""
        if not chunk:
            return False
        data = bytes(chunk)
        # The archive keeps every chunk; only the pending utterance is capped.
        if self.archive_enabled:
            self.archive.append(data)
            self.archive_bytes += len(data)
        if self.max_pending_bytes is not None and self.pending_bytes + len(data) > self.max_pending_bytes:
            log_important(
                "audio.pending_full",
                level=logging.WARNING,
                dedupe_key=self.label or None,
                dedupe_window_s=5.0,
                session_id=self.label,
                pending_bytes=self.pending_bytes,
            )
            return False
        self.pending.append(data)
        self.pending_bytes += len(data)
        return True

    def take_pending(self) -> bytes:
        data = b"".join(self.pending)
        self.pending.clear()
        self.pending_bytes = 0
        return data

    def take_archive(self) -> bytes:
        data = b"".join(self.archive)
        self.archive.clear()
        self.archive_bytes = 0
        return data


class AudioPipeline:
    def __init__(
        self,
        transcriber,
        artifact_store=None,
        *,
        language: str = "zh",
        archive_timeout_s: float = 10.0,
    ):
        self.transcriber = transcriber
        self.artifact_store = artifact_store
        self.language = language
        self.archive_timeout_s = float(archive_timeout_s)

    @property
    def transcription_available(self) -> bool:
        return bool(self.transcriber is not None and getattr(self.transcriber, "available", False))

    async def transcribe_pending(self, session, emit: Emit) -> str | None:
        # Snapshot and clear up front: chunks arriving while we wait belong to the next utterance.
        audio = session.audio.take_pending()
        if not audio:
            await emit("transcription_result", {"text": None, "error": "No audio received"})
            return None
        if not self.transcription_available:
            await emit("transcription_result", {"text": None, "error": "Transcription is not available"})
            return None

        await emit("transcription_processing", True)
        text: str | None = None
        error: str | None = None
        try:
            text = await self.transcriber.transcribe(audio, language=self.language)
            if not text:
                error = "No speech recognized"
        except Exception as e:
            logger.exception("Transcription failed for session %s", session.id)
            log_important(
                "transcription.failed",
                level=logging.WARNING,
                session_id=session.id,
                size=len(audio),
                error=e,
            )
            error = "Transcription failed"
        finally:
            await emit("transcription_processing", False)

        if error:
            await emit("transcription_result", {"text": None, "error": error})
            return None
        log_important("transcription.done", session_id=session.id, size=len(audio), chars=len(text or ""))
        await emit("transcription_result", {"text": text})
        return text

    async def flush_archive(self, session) -> str | None:
        """Store the full recording; never raises and never waits past the timeout."""
        data = session.audio.take_archive()
        if not data or self.artifact_store is None:
            return None

        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        filename = f"session-{session.id}-recording-{stamp}.webm"
        try:
            path = await asyncio.wait_for(
                asyncio.to_thread(
                    self.artifact_store.save,
                    filename,
                    data,
                    mime_type="audio/webm",
                    case_id=session.case_id,
                ),
                timeout=self.archive_timeout_s,
            )
        except Exception as e:
            logger.exception("Failed to archive recording for session %s", session.id)
            log_important(
                "audio.archive_failed",
                level=logging.WARNING,
                session_id=session.id,
                size=len(data),
                error=(str(e) or type(e).__name__),
            )
            return None

        log_important("audio.archive_saved", session_id=session.id, size=len(data), path=path)
        return str(path)
