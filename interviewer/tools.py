from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

from interviewer.document import INTAKE_SCHEMA, PRD_SCHEMA, StructuredDocument
from interviewer.logging_utils import log_important

logger = logging.getLogger(__name__)


INTERVIEW_TOOLS: list[dict] = [
    {
        "type": "function",
        "function": {
            "name": "update_prd_section",
            "description": (
                "Update one PRD section. Call this when the conversation has produced enough "
                "information to fill the section."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "sectionKey": {
                        "type": "string",
                        "enum": list(PRD_SCHEMA.keys),
                        "description": "PRD section key",
                    },
                    "content": {
                        "type": "string",
                        "description": "Section content in Markdown",
                    },
                },
                "required": ["sectionKey", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "summarize_conversation",
            "description": (
                "Summarize the conversation so far: key points, decisions made and open questions. "
                "Call proactively every 3-5 turns."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "summary": {"type": "string", "description": "Conversation summary (bullet points)"},
                    "keyDecisions": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Confirmed key decisions",
                    },
                    "openQuestions": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Questions still to clarify",
                    },
                },
                "required": ["summary"],
            },
        },
    },
]

INTAKE_TOOLS: list[dict] = [
    {
        "type": "function",
        "function": {
            "name": "update_intake",
            "description": (
                "Update the structured pain-point analysis. Several fields may be updated in one call."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "background": {
                        "type": "string",
                        "description": "Company / team background (what they do, size, industry)",
                    },
                    "currentState": {
                        "type": "string",
                        "description": "Current way of working (tools, process)",
                    },
                    "painPoints": {
                        "type": "string",
                        "description": "Concrete pain points (where it hurts, time spent, consequences)",
                    },
                    "expectedOutcome": {
                        "type": "string",
                        "description": "Expected improvement (ideal state, quantified goals)",
                    },
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "mark_complete",
            "description": "Mark the pain-point analysis as complete once all fields have enough content.",
            "parameters": {
                "type": "object",
                "properties": {
                    "summary": {
                        "type": "string",
                        "description": "A short summary of the need (2-3 sentences)",
                    },
                },
                "required": ["summary"],
            },
        },
    },
]


def tool_names(definitions: list[dict]) -> frozenset[str]:
    return frozenset(d["function"]["name"] for d in definitions)


# ============================================
# STREAMED TOOL-CALL ASSEMBLY
# ============================================

def decode_arguments(raw: str | None) -> dict[str, Any]:
    """Best-effort JSON object decode; anything else yields an empty dict."""
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class ToolCall:
    index: int
    id: str
    name: str
    arguments_json: str = ""

    @property
    def arguments(self) -> dict[str, Any]:
        return decode_arguments(self.arguments_json)

    def to_message(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }


@dataclass
class _PartialToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


def attr_or_key(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class ToolCallAccumulator:
    """
    Collects tool-call fragments from a chat-completion stream.

    Fragments are addressed by their stream ``index``; names and argument JSON
    arrive in pieces and are concatenated in place. Slots that never receive a
    name are dropped by ``finalize``.
    """

    def __init__(self) -> None:
        self._parts: list[_PartialToolCall] = []

    def __len__(self) -> int:
        return len(self._parts)

    def add(self, fragment: Any) -> None:
        index = attr_or_key(fragment, "index")
        if index is None:
            return
        try:
            index = int(index)
        except (TypeError, ValueError):
            return
        if index < 0:
            return
        while len(self._parts) <= index:
            self._parts.append(_PartialToolCall())

        part = self._parts[index]
        call_id = attr_or_key(fragment, "id")
        if call_id:
            part.id = str(call_id)
        fn = attr_or_key(fragment, "function")
        name = attr_or_key(fn, "name")
        if name:
            part.name += str(name)
        args = attr_or_key(fn, "arguments")
        if args:
            part.arguments += str(args)

    def finalize(self) -> list[ToolCall]:
        out: list[ToolCall] = []
        for i, part in enumerate(self._parts):
            if not part.name:
                continue
            out.append(
                ToolCall(
                    index=i,
                    id=part.id or f"call_{i}",
                    name=part.name,
                    arguments_json=part.arguments,
                )
            )
        return out


# ============================================
# TOOL COMMANDS
# ============================================

@dataclass(frozen=True)
class UpdatePrdSection:
    section_key: str
    content: str


@dataclass(frozen=True)
class SummarizeConversation:
    summary: str
    key_decisions: tuple[str, ...] = ()
    open_questions: tuple[str, ...] = ()


@dataclass(frozen=True)
class UpdateIntake:
    fields: dict[str, str]
    ignored: tuple[str, ...] = ()


@dataclass(frozen=True)
class MarkComplete:
    summary: str


@dataclass(frozen=True)
class UnknownTool:
    name: str


ToolCommand = Union[UpdatePrdSection, SummarizeConversation, UpdateIntake, MarkComplete, UnknownTool]


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _as_str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip())


def decode_tool_command(name: str, arguments: dict[str, Any], *, allowed: frozenset[str] | None = None) -> ToolCommand:
    if allowed is not None and name not in allowed:
        return UnknownTool(name=name)
    args = arguments if isinstance(arguments, dict) else {}

    if name == "update_prd_section":
        return UpdatePrdSection(section_key=_as_str(args.get("sectionKey")), content=_as_str(args.get("content")))
    if name == "summarize_conversation":
        return SummarizeConversation(
            summary=_as_str(args.get("summary")),
            key_decisions=_as_str_tuple(args.get("keyDecisions")),
            open_questions=_as_str_tuple(args.get("openQuestions")),
        )
    if name == "update_intake":
        fields = {k: args[k] for k in INTAKE_SCHEMA.keys if isinstance(args.get(k), str) and args[k].strip()}
        ignored = tuple(k for k in args if k not in fields)
        return UpdateIntake(fields=fields, ignored=ignored)
    if name == "mark_complete":
        return MarkComplete(summary=_as_str(args.get("summary")).strip())
    return UnknownTool(name=name)


# ============================================
# DISPATCHER
# ============================================

@dataclass(frozen=True)
class ConversationSummary:
    summary: str
    key_decisions: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {
            "summary": self.summary,
            "key_decisions": list(self.key_decisions),
            "open_questions": list(self.open_questions),
        }


@dataclass(frozen=True)
class TurnContext:
    session_id: int | str
    kind: str
    turn: int = 0
    case_id: int | None = None


def _result(payload: dict) -> str:
    return json.dumps(payload, ensure_ascii=False)


class ToolDispatcher:
    """
    Applies one decoded tool call to a session's document.

    Every path returns a JSON string destined for a ``tool`` message; validation
    problems are reported in that payload so the model can correct itself.
    """

    def __init__(
        self,
        document: StructuredDocument,
        *,
        tools: list[dict],
        context: TurnContext,
        audit=None,
    ):
        self.document = document
        self.allowed = tool_names(tools)
        self.context = context
        self.audit = audit
        self.document_changed = False
        self.summary: ConversationSummary | None = None

    def dispatch(self, call: ToolCall, *, iteration: int = 0) -> str:
        command = decode_tool_command(call.name, call.arguments, allowed=self.allowed)
        meta = {"turn": self.context.turn, "iteration": iteration, "tool_call_id": call.id}

        if isinstance(command, UpdatePrdSection):
            outcome = self.document.apply_section_update(command.section_key, command.content)
            if outcome.ok:
                self.document_changed = True
                self._record("prd_update", {"sectionKey": outcome.key, "completeness": outcome.completeness, **meta})
            log_important(
                "tool.dispatched",
                tool=call.name,
                ok=outcome.ok,
                section=command.section_key,
                session_id=self.context.session_id,
            )
            return _result(outcome.to_payload())

        if isinstance(command, UpdateIntake):
            updated: list[str] = []
            for key, content in command.fields.items():
                if self.document.apply_section_update(key, content).ok:
                    updated.append(key)
            log_important("tool.dispatched", tool=call.name, ok=bool(updated), session_id=self.context.session_id)
            if not updated:
                return _result(
                    {
                        "success": False,
                        "error": "No recognized non-empty fields. Valid fields: " + ", ".join(INTAKE_SCHEMA.keys),
                    }
                )
            self.document_changed = True
            self._record(
                "intake_update",
                {"updated": updated, "completeness": self.document.completeness, **meta},
            )
            payload: dict[str, Any] = {
                "success": True,
                "updated": updated,
                "completeness": self.document.completeness,
            }
            if command.ignored:
                payload["ignored"] = list(command.ignored)
            return _result(payload)

        if isinstance(command, SummarizeConversation):
            self.summary = ConversationSummary(
                summary=command.summary,
                key_decisions=list(command.key_decisions),
                open_questions=list(command.open_questions),
            )
            self._record("summary", {**self.summary.to_payload(), **meta})
            log_important("tool.dispatched", tool=call.name, ok=True, session_id=self.context.session_id)
            return _result({"success": True})

        if isinstance(command, MarkComplete):
            self.document.mark_complete(command.summary)
            self.document_changed = True
            self._record("intake_complete", {"summary": command.summary, **meta})
            log_important("tool.dispatched", tool=call.name, ok=True, session_id=self.context.session_id)
            return _result({"success": True, "summary": self.document.summary})

        logger.warning("Unknown tool requested: %s (session %s)", command.name, self.context.session_id)
        return _result({"success": False, "error": f"Unknown tool: {command.name}"})

    def _record(self, event_type: str, payload: dict) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record(
                event_type,
                payload,
                session_id=self.context.session_id,
                case_id=self.context.case_id,
            )
        except Exception:
            logger.exception("Failed to record audit event %s", event_type)
