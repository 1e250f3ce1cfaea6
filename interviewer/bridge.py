from __future__ import annotations

import asyncio
import base64
import binascii
import dataclasses
import logging
import uuid
from datetime import datetime
from typing import Any

from interviewer.agent import INTAKE_PROFILE, INTERVIEW_PROFILE, AgentBackendError, AgentLoop
from interviewer.audio import AudioPipeline
from interviewer.document import PRD_SCHEMA, StructuredDocument
from interviewer.logging_utils import log_important
from interviewer.persistence import history_from_transcript
from interviewer.prompts import build_intake_prompt, build_interview_prompt
from interviewer.sessions import (
    AdmissionError,
    Session,
    SessionKind,
    SessionRegistry,
    TurnQuotaExceeded,
)

logger = logging.getLogger(__name__)

_MAX_MESSAGE_CHARS = 8000


async def _ws_send_json(websocket, payload: dict, send_lock: asyncio.Lock | None = None) -> bool:
    try:
        if send_lock is None:
            await websocket.send_json(payload)
        else:
            async with send_lock:
                await websocket.send_json(payload)
        return True
    except Exception:
        return False


def _event(event_type: str, data: Any = None) -> dict:
    if isinstance(data, dict):
        return {"type": event_type, **data}
    if data is None:
        return {"type": event_type}
    return {"type": event_type, "value": data}


def _now_iso() -> str:
    return datetime.now().isoformat()


class Participant:
    """One transport connection. Interview channels may hold several."""

    def __init__(self, websocket, *, kind: SessionKind, client_ip: str | None = None):
        self.id = uuid.uuid4().hex[:8]
        self.websocket = websocket
        self.kind = SessionKind(kind)
        self.client_ip = client_ip
        self.session_id: int | str | None = None
        self.closed = False
        self._send_lock = asyncio.Lock()

    async def send(self, payload: dict) -> bool:
        if self.closed:
            return False
        return await _ws_send_json(self.websocket, payload, self._send_lock)


class RoomManager:
    def __init__(self) -> None:
        self.active: dict[str, list[Participant]] = {}

    def join(self, channel: str, participant: Participant) -> None:
        members = self.active.setdefault(channel, [])
        if participant not in members:
            members.append(participant)

    def leave(self, channel: str, participant: Participant) -> int:
        members = [p for p in self.active.get(channel, []) if p is not participant]
        if members:
            self.active[channel] = members
        else:
            self.active.pop(channel, None)
        return len(members)

    def members(self, channel: str) -> list[Participant]:
        return list(self.active.get(channel, []))

    async def broadcast(self, channel: str, payload: dict) -> int:
        delivered = 0
        for participant in self.members(channel):
            if await participant.send(payload):
                delivered += 1
        return delivered


def channel_for(session_id) -> str:
    return f"session:{session_id}"


def _coerce_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        out = int(value)
    except (TypeError, ValueError):
        return None
    return out if out > 0 else None


class TransportBridge:
    """
    Maps transport events onto sessions, the agent loop and the audio pipeline.

    Agent turns and transcriptions run as tasks so the receive loop keeps
    reading audio while a turn is in flight; per-session ordering comes from
    ``Session.turn_lock``.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        llm=None,
        audio: AudioPipeline | None = None,
        transcripts=None,
        documents=None,
        cases=None,
        audit=None,
        config: dict | None = None,
    ):
        self.registry = registry
        self.llm = llm
        self.audio = audio or AudioPipeline(None)
        self.transcripts = transcripts
        self.documents = documents
        self.cases = cases
        self.audit = audit
        self.config = dict(config or {})
        self.rooms = RoomManager()
        self._tasks: set[asyncio.Task] = set()

    # ---------- plumbing ----------

    def _agent_for(self, kind: SessionKind) -> AgentLoop | None:
        if self.llm is None:
            return None
        if kind is SessionKind.INTERVIEW:
            profile = dataclasses.replace(
                INTERVIEW_PROFILE,
                max_iterations=int(self.config.get("interview_max_iterations") or INTERVIEW_PROFILE.max_iterations),
            )
        else:
            profile = dataclasses.replace(
                INTAKE_PROFILE,
                max_iterations=int(self.config.get("intake_max_iterations") or INTAKE_PROFILE.max_iterations),
            )
        return AgentLoop(self.llm, profile, audit=self.audit)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Bridge task failed: {exc}", exc_info=exc)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _emit(self, participant: Participant, session: Session, event_type: str, data: Any = None) -> None:
        payload = _event(event_type, data)
        if session.kind is SessionKind.INTERVIEW:
            await self.rooms.broadcast(channel_for(session.id), payload)
        else:
            await participant.send(payload)

    async def _error(self, participant: Participant, message: str, *, code: str = "error") -> None:
        await participant.send(_event("error", {"message": message, "code": code}))

    # ---------- inbound events ----------

    async def handle_event(self, participant: Participant, msg: dict) -> None:
        msg_type = msg.get("type") if isinstance(msg, dict) else None
        if msg_type == "join":
            await self.handle_join(participant, msg)
        elif msg_type == "user_message":
            text = msg.get("text", msg.get("message", ""))
            self._spawn(self.handle_user_message(participant, text))
        elif msg_type == "audio_chunk":
            chunk = msg.get("chunk")
            try:
                data = base64.b64decode(chunk, validate=True) if isinstance(chunk, str) else b""
            except (binascii.Error, ValueError):
                data = b""
            if not data:
                await self._error(participant, "audio_chunk requires base64 data", code="invalid_audio")
                return
            await self.handle_audio_chunk(participant, data)
        elif msg_type == "audio_stop":
            self._spawn(self.handle_audio_stop(participant))
        elif msg_type == "ping":
            # Lookup refreshes the idle timer.
            self.registry.get(participant.session_id)
            await participant.send(_event("pong"))
        else:
            await self._error(participant, f"Unknown event type: {msg_type!r}", code="unknown_event")

    async def handle_join(self, participant: Participant, payload: dict) -> Session | None:
        if participant.kind is SessionKind.INTAKE:
            session = self.registry.get(participant.session_id)
            if session is None:
                try:
                    session = self.registry.create(SessionKind.INTAKE, client_ip=participant.client_ip)
                except AdmissionError as e:
                    await self._error(participant, e.user_message, code="rate_limited")
                    return None
                session.audio.max_pending_bytes = self.config.get("audio_max_pending_bytes")
                participant.session_id = session.id
            await participant.send(
                _event(
                    "session_joined",
                    {
                        "session_id": session.id,
                        "transcription_available": self.audio.transcription_available,
                        "completeness": session.document.completeness,
                    },
                )
            )
            return session

        session_id = _coerce_id(payload.get("session_id"))
        case_id = _coerce_id(payload.get("case_id"))
        if session_id is None or case_id is None:
            await self._error(participant, "join requires numeric session_id and case_id", code="invalid_join")
            return None

        if participant.session_id is not None and participant.session_id != session_id:
            await self._leave(participant)

        session = self.registry.get(session_id)
        if session is None:
            session = self._open_interview(session_id, case_id, participant.client_ip)
        elif session.case_id != case_id:
            await self._error(participant, "session belongs to a different case", code="invalid_join")
            return None

        self.rooms.join(channel_for(session_id), participant)
        participant.session_id = session_id
        await participant.send(
            _event(
                "session_joined",
                {
                    "session_id": session_id,
                    "transcription_available": self.audio.transcription_available,
                    "completeness": session.document.completeness,
                },
            )
        )
        return session

    def _open_interview(self, session_id: int, case_id: int, client_ip: str | None) -> Session:
        document = None
        if self.documents is not None:
            document = self.documents.load(case_id, PRD_SCHEMA)
        entries = self.transcripts.read(session_id) if self.transcripts is not None else []
        session = self.registry.create(
            SessionKind.INTERVIEW,
            session_id=session_id,
            case_id=case_id,
            client_ip=client_ip,
            document=document or StructuredDocument(schema=PRD_SCHEMA),
            history=history_from_transcript(entries),
        )
        session.transcript_seq = max((int(e.get("sequence_number") or 0) for e in entries), default=-1) + 1
        session.audio.max_pending_bytes = self.config.get("audio_max_pending_bytes")
        return session

    async def handle_user_message(self, participant: Participant, text: Any) -> None:
        text = (text if isinstance(text, str) else str(text or "")).strip()[:_MAX_MESSAGE_CHARS]
        if not text:
            return

        session = self.registry.get(participant.session_id)
        if session is None:
            if participant.kind is SessionKind.INTAKE:
                await self._error(participant, "Your session has expired. Please start again.", code="session_expired")
            else:
                await self._error(participant, "Not joined to an interview session.", code="not_joined")
            return

        agent = self._agent_for(session.kind)
        if agent is None:
            await self._error(participant, "The assistant is not configured.", code="llm_unconfigured")
            return

        max_turns = self.config.get("intake_max_turns") if session.kind is SessionKind.INTAKE else None
        try:
            session.begin_turn(max_turns)
        except TurnQuotaExceeded as e:
            log_important("intake.turn_quota", level=logging.WARNING, session_id=session.id, turns=session.turn_count)
            await self._error(participant, e.user_message, code="turn_quota")
            return

        session.turns_in_flight += 1
        try:
            async with session.turn_lock:
                await self._run_turn(participant, session, agent, text)
        finally:
            session.turns_in_flight -= 1
            if session.kind is SessionKind.INTERVIEW:
                await self._retire_if_idle(session)

    async def _run_turn(self, participant: Participant, session: Session, agent: AgentLoop, text: str) -> None:
        interview = session.kind is SessionKind.INTERVIEW
        await self._emit(participant, session, "message", {"role": "user", "content": text, "timestamp": _now_iso()})
        await self._emit(participant, session, "agent_typing", True)

        language = str(self.config.get("reply_language") or "Traditional Chinese (zh-TW)")
        if interview:
            lead_context = self.cases.lead_context(session.case_id) if self.cases is not None else ""
            system_prompt = build_interview_prompt(lead_context, session.document, language=language)
        else:
            system_prompt = build_intake_prompt(session.document, language=language)

        async def on_stream(chunk: str) -> None:
            await self._emit(participant, session, "agent_stream", {"chunk": chunk})

        version_before = session.document.version
        try:
            result = await agent.run_turn(session, text, system_prompt=system_prompt, on_stream=on_stream)
        except AgentBackendError:
            await self._emit(participant, session, "agent_typing", False)
            await self._emit(
                participant,
                session,
                "error",
                {"message": "The assistant could not respond. Please try again.", "code": "backend_error"},
            )
            return
        finally:
            if interview and session.document.version != version_before:
                self._save_document(session)

        await self._emit(participant, session, "agent_typing", False)
        if interview:
            # Failed turns leave no transcript lines.
            self._append_transcript(session, "consultant", text)
            self._append_transcript(session, "agent", result.reply)

        if result.document_changed:
            await self._emit(participant, session, "document_changed", self._document_payload(session))
        if result.summary is not None:
            await self._emit(participant, session, "agent_summary", result.summary.to_payload())
        await self._emit(
            participant,
            session,
            "message",
            {"role": "assistant", "content": result.reply, "timestamp": _now_iso()},
        )
        if interview and result.tool_calls:
            await self._emit(participant, session, "tool_calls", {"calls": result.tool_call_report()})

    async def handle_audio_chunk(self, participant: Participant, chunk: bytes) -> None:
        session = self.registry.get(participant.session_id)
        if session is None:
            logger.debug("Dropping audio chunk from %s: no session", participant.id)
            return
        session.audio.append(chunk)

    async def handle_audio_stop(self, participant: Participant) -> None:
        session = self.registry.get(participant.session_id)
        if session is None:
            await self._error(participant, "Not joined to a session.", code="not_joined")
            return

        async def emit(event_type: str, data: Any) -> None:
            await self._emit(participant, session, event_type, data)

        await self.audio.transcribe_pending(session, emit)

    async def handle_disconnect(self, participant: Participant) -> None:
        participant.closed = True
        await self._leave(participant)

    async def _leave(self, participant: Participant) -> None:
        session_id = participant.session_id
        participant.session_id = None
        if session_id is None:
            return

        if participant.kind is SessionKind.INTAKE:
            self.registry.delete(session_id)
            return

        remaining = self.rooms.leave(channel_for(session_id), participant)
        if remaining > 0:
            return
        session = self.registry.get(session_id)
        if session is not None:
            await self._retire_if_idle(session)

    async def _retire_if_idle(self, session: Session) -> None:
        """Flush and drop an interview session once nobody is joined and no turn is running."""
        channel = channel_for(session.id)
        if self.rooms.members(channel) or session.turns_in_flight:
            return
        if self.registry.get(session.id) is not session:
            return
        await self.audio.flush_archive(session)
        # A participant may have rejoined during the flush.
        if self.rooms.members(channel) or session.turns_in_flight:
            return
        self.registry.delete(session.id)

    # ---------- collaborators ----------

    def _append_transcript(self, session: Session, speaker: str, content: str) -> None:
        if self.transcripts is None:
            return
        seq = session.transcript_seq
        session.transcript_seq += 1
        self.transcripts.append(session.id, speaker, content, seq)

    def _save_document(self, session: Session) -> None:
        if self.documents is None or session.case_id is None:
            return
        self.documents.save(session.case_id, session.document)

    def _document_payload(self, session: Session) -> dict:
        doc = session.document
        if session.kind is SessionKind.INTERVIEW:
            return {
                "session_id": session.id,
                "case_id": session.case_id,
                "completeness": doc.completeness,
                "last_updated_section": doc.last_updated_section,
            }
        return {
            "session_id": session.id,
            "completeness": doc.completeness,
            "sections": doc.snapshot(),
            "is_complete": doc.is_complete,
            "summary": doc.summary,
        }
