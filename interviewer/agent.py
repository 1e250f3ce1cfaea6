from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from interviewer.logging_utils import log_important
from interviewer.tools import (
    INTAKE_TOOLS,
    INTERVIEW_TOOLS,
    ConversationSummary,
    ToolCall,
    ToolCallAccumulator,
    ToolDispatcher,
    TurnContext,
    attr_or_key,
)

logger = logging.getLogger(__name__)

StreamCallback = Callable[[str], Awaitable[Any] | Any]


class AgentBackendError(RuntimeError):
    """The language-model call failed; the turn was aborted without touching history."""


@dataclass(frozen=True)
class AgentProfile:
    name: str
    tools: list[dict]
    max_iterations: int
    fallback_reply: str


INTERVIEW_PROFILE = AgentProfile(
    name="interview",
    tools=INTERVIEW_TOOLS,
    max_iterations=5,
    fallback_reply="(Reached the maximum number of reasoning steps for this message.)",
)

INTAKE_PROFILE = AgentProfile(
    name="intake",
    tools=INTAKE_TOOLS,
    max_iterations=3,
    fallback_reply="Let me organize what you have told me so far...",
)


@dataclass
class TurnResult:
    reply: str
    document_changed: bool = False
    summary: ConversationSummary | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    iterations: int = 0
    exhausted: bool = False
    completeness: int = 0

    def tool_call_report(self) -> list[dict]:
        return [{"name": c.name, "args": c.arguments} for c in self.tool_calls]


class AgentLoop:
    """
    Drives one user turn against the model: stream, resolve tool calls,
    repeat until the model answers in plain text or the iteration budget
    runs out. Tools are withheld on the last iteration to force an answer.
    """

    def __init__(self, llm, profile: AgentProfile, *, audit=None):
        self.llm = llm
        self.profile = profile
        self.audit = audit

    @property
    def max_iterations(self) -> int:
        return max(1, int(self.profile.max_iterations))

    async def _forward(self, on_stream: StreamCallback | None, chunk: str) -> None:
        if on_stream is None:
            return
        try:
            res = on_stream(chunk)
            if inspect.isawaitable(res):
                await res
        except Exception:
            # Listeners may be gone; the turn still has to finish.
            logger.debug("Stream listener failed", exc_info=True)

    async def _stream_once(
        self,
        messages: list[dict],
        *,
        tools: list[dict] | None,
        on_stream: StreamCallback | None,
    ) -> tuple[str, list[ToolCall]]:
        stream = await self.llm.stream_chat(messages, tools=tools)

        content = ""
        calls = ToolCallAccumulator()
        async for chunk in stream:
            choices = attr_or_key(chunk, "choices")
            if not choices:
                continue
            delta = attr_or_key(choices[0], "delta")
            if delta is None:
                continue

            piece = attr_or_key(delta, "content")
            if piece:
                content += piece
                await self._forward(on_stream, piece)

            for fragment in attr_or_key(delta, "tool_calls") or []:
                calls.add(fragment)

        return content, calls.finalize()

    async def run_turn(
        self,
        session,
        user_message: str,
        *,
        system_prompt: str,
        on_stream: StreamCallback | None = None,
    ) -> TurnResult:
        user_entry = {"role": "user", "content": user_message}
        messages: list[dict] = [{"role": "system", "content": system_prompt}, *session.history, user_entry]
        # Entries committed to session.history only once the turn produces a reply.
        turn_entries: list[dict] = [user_entry]

        dispatcher = ToolDispatcher(
            session.document,
            tools=self.profile.tools,
            context=TurnContext(
                session_id=session.id,
                kind=self.profile.name,
                turn=session.turn_count,
                case_id=getattr(session, "case_id", None),
            ),
            audit=self.audit,
        )
        all_calls: list[ToolCall] = []

        for iteration in range(self.max_iterations):
            is_last = iteration == self.max_iterations - 1
            try:
                content, calls = await self._stream_once(
                    messages,
                    tools=None if is_last else self.profile.tools,
                    on_stream=on_stream,
                )
            except Exception as e:
                log_important(
                    "agent.turn_failed",
                    level=logging.ERROR,
                    kind=self.profile.name,
                    session_id=session.id,
                    iteration=iteration,
                    error=e,
                )
                raise AgentBackendError(str(e)) from e

            if not calls:
                turn_entries.append({"role": "assistant", "content": content})
                session.history.extend(turn_entries)
                self._record_response(session, content)
                log_important(
                    "agent.turn_done",
                    kind=self.profile.name,
                    session_id=session.id,
                    iterations=iteration + 1,
                    tool_calls=len(all_calls),
                    completeness=session.document.completeness,
                )
                return TurnResult(
                    reply=content,
                    document_changed=dispatcher.document_changed,
                    summary=dispatcher.summary,
                    tool_calls=all_calls,
                    iterations=iteration + 1,
                    completeness=session.document.completeness,
                )

            assistant_entry = {
                "role": "assistant",
                "content": content or None,
                "tool_calls": [c.to_message() for c in calls],
            }
            messages.append(assistant_entry)
            turn_entries.append(assistant_entry)

            for call in calls:
                all_calls.append(call)
                try:
                    result = dispatcher.dispatch(call, iteration=iteration)
                except Exception as e:
                    logger.exception("Tool %s failed in session %s", call.name, session.id)
                    result = json.dumps({"success": False, "error": f"Tool {call.name} failed: {e}"})
                tool_entry = {"role": "tool", "tool_call_id": call.id, "content": result}
                messages.append(tool_entry)
                turn_entries.append(tool_entry)

        reply = self.profile.fallback_reply
        turn_entries.append({"role": "assistant", "content": reply})
        session.history.extend(turn_entries)
        log_important(
            "agent.max_iterations",
            level=logging.WARNING,
            kind=self.profile.name,
            session_id=session.id,
            tool_calls=len(all_calls),
        )
        return TurnResult(
            reply=reply,
            document_changed=dispatcher.document_changed,
            summary=dispatcher.summary,
            tool_calls=all_calls,
            iterations=self.max_iterations,
            exhausted=True,
            completeness=session.document.completeness,
        )

    def _record_response(self, session, content: str) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record(
                "llm_response",
                {"model": getattr(self.llm, "model", ""), "reply": content[:500]},
                session_id=session.id,
                case_id=getattr(session, "case_id", None),
            )
        except Exception:
            logger.exception("Failed to record llm_response event")
