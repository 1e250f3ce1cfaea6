from __future__ import annotations

import asyncio
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from interviewer.audio import AudioBuffers
from interviewer.document import INTAKE_SCHEMA, PRD_SCHEMA, StructuredDocument
from interviewer.logging_utils import log_important

logger = logging.getLogger(__name__)


class SessionKind(str, Enum):
    INTERVIEW = "interview"
    INTAKE = "intake"


class SessionNotFound(LookupError):
    pass


class AdmissionError(Exception):
    """Request refused before any model call."""

    user_message = "Request refused."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)
        self.user_message = message or self.user_message


class RateLimitExceeded(AdmissionError):
    user_message = "Too many sessions from your network. Please try again later."

    def __init__(self, retry_after_s: float = 0.0):
        super().__init__()
        self.retry_after_s = max(0.0, float(retry_after_s))


class TurnQuotaExceeded(AdmissionError):
    user_message = "This conversation has reached its message limit. Please continue by registering."


@dataclass
class Session:
    id: int | str
    kind: SessionKind
    document: StructuredDocument
    history: list[dict] = field(default_factory=list)
    turn_count: int = 0
    last_activity_at: float = 0.0
    case_id: int | None = None
    client_ip: str | None = None
    audio: AudioBuffers = field(default_factory=AudioBuffers)
    transcript_seq: int = 0
    # Serializes agent turns; waiters are served in arrival order.
    turn_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)
    # Turns holding or queued on turn_lock.
    turns_in_flight: int = field(default=0, repr=False, compare=False)

    def begin_turn(self, max_turns: int | None = None) -> int:
        if max_turns is not None and self.turn_count >= max_turns:
            raise TurnQuotaExceeded()
        self.turn_count += 1
        return self.turn_count


@dataclass
class AdmissionWindow:
    count: int
    reset_at: float


class SessionRegistry:
    """
    In-memory store of live sessions.

    Intake sessions are anonymous: creation is rate limited per client IP and
    idle ones are removed by ``sweep``. Interview sessions live until their
    transport goes away and are never swept.
    """

    def __init__(
        self,
        *,
        intake_ttl_s: float = 300.0,
        intake_sessions_per_ip: int = 5,
        intake_rate_window_s: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.intake_ttl_s = float(intake_ttl_s)
        self.intake_sessions_per_ip = int(intake_sessions_per_ip)
        self.intake_rate_window_s = float(intake_rate_window_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[int | str, Session] = {}
        self._windows: dict[str, AdmissionWindow] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def counts(self) -> dict[str, int]:
        with self._lock:
            out = {kind.value: 0 for kind in SessionKind}
            for s in self._sessions.values():
                out[s.kind.value] += 1
            return out

    def _admit_locked(self, client_ip: str, now: float) -> None:
        window = self._windows.get(client_ip)
        if window is None or now > window.reset_at:
            window = AdmissionWindow(count=0, reset_at=now + self.intake_rate_window_s)
            self._windows[client_ip] = window
        if window.count >= self.intake_sessions_per_ip:
            raise RateLimitExceeded(retry_after_s=window.reset_at - now)
        window.count += 1

    def create(
        self,
        kind: SessionKind,
        *,
        session_id: int | None = None,
        case_id: int | None = None,
        client_ip: str | None = None,
        document: StructuredDocument | None = None,
        history: list[dict] | None = None,
    ) -> Session:
        kind = SessionKind(kind)
        now = self._clock()
        with self._lock:
            if kind is SessionKind.INTAKE:
                try:
                    self._admit_locked(client_ip or "unknown", now)
                except RateLimitExceeded as e:
                    log_important(
                        "intake.rate_limited",
                        level=logging.WARNING,
                        client_ip=client_ip,
                        retry_after_s=round(e.retry_after_s, 1),
                    )
                    raise
                sid: int | str = secrets.token_urlsafe(16)
                while sid in self._sessions:
                    sid = secrets.token_urlsafe(16)
                session = Session(
                    id=sid,
                    kind=kind,
                    document=document or StructuredDocument(schema=INTAKE_SCHEMA),
                    last_activity_at=now,
                    client_ip=client_ip,
                    audio=AudioBuffers(archive_enabled=False, label=str(sid)),
                )
            else:
                if session_id is None:
                    raise ValueError("interview sessions require an externally assigned session_id")
                existing = self._sessions.get(session_id)
                if existing is not None:
                    existing.last_activity_at = now
                    return existing
                session = Session(
                    id=session_id,
                    kind=kind,
                    document=document or StructuredDocument(schema=PRD_SCHEMA),
                    history=list(history or []),
                    last_activity_at=now,
                    case_id=case_id,
                    client_ip=client_ip,
                    audio=AudioBuffers(archive_enabled=True, label=str(session_id)),
                )
            self._sessions[session.id] = session

        log_important("session.created", kind=kind.value, session_id=session.id, client_ip=client_ip)
        return session

    def get(self, session_id: int | str | None) -> Session | None:
        if session_id is None:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_activity_at = self._clock()
            return session

    def require(self, session_id: int | str | None) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session not found: {session_id}")
        return session

    def delete(self, session_id: int | str | None) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        log_important("session.deleted", kind=session.kind.value, session_id=session_id)
        return True

    def sweep(self, now: float | None = None) -> list[int | str]:
        now = self._clock() if now is None else float(now)
        with self._lock:
            expired = [
                sid
                for sid, s in self._sessions.items()
                if s.kind is SessionKind.INTAKE and now - s.last_activity_at > self.intake_ttl_s
            ]
            for sid in expired:
                del self._sessions[sid]
            stale_windows = [ip for ip, w in self._windows.items() if now > w.reset_at]
            for ip in stale_windows:
                del self._windows[ip]
        if expired:
            log_important("session.swept", removed=len(expired), remaining=len(self))
        return expired

    async def run_sweeper(self, interval_s: float = 60.0) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                self.sweep()
            except Exception:
                logger.exception("Session sweep failed")
