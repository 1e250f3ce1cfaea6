"""
File-backed collaborators used by the transport bridge.

Layout under the data directory:
  transcripts/<session_id>.jsonl   one line per spoken/typed turn
  prd/<case_id>.json               durable structured-document record
  cases/<case_id>.json             lead registration record (read only here)
  artifacts/<case_id>/<filename>   binary artifacts such as full recordings
  agent_events.jsonl               append-only audit log
"""

import json
import logging
import re
import threading
from datetime import datetime
from pathlib import Path

from interviewer.document import DocumentSchema, StructuredDocument

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_component(value: object) -> str:
    s = _SAFE_NAME.sub("_", str(value)).strip("._")
    return s or "unknown"


def _write_json_atomic(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    tmp_path.replace(path)


class TranscriptStore:
    def __init__(self, root: Path):
        self.root = Path(root) / "transcripts"
        self._lock = threading.Lock()

    def _path(self, session_id) -> Path:
        return self.root / f"{_safe_component(session_id)}.jsonl"

    def append(self, session_id, speaker: str, content: str, sequence_number: int) -> None:
        entry = {
            "session_id": session_id,
            "speaker": speaker,
            "content": content,
            "sequence_number": int(sequence_number),
            "timestamp": datetime.now().isoformat(),
        }
        try:
            with self._lock:
                self.root.mkdir(parents=True, exist_ok=True)
                with self._path(session_id).open("a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except Exception:
            logger.exception(f"Failed to append transcript for session {session_id}")

    def read(self, session_id) -> list[dict]:
        path = self._path(session_id)
        if not path.is_file():
            return []
        out: list[dict] = []
        try:
            for line in path.read_text(encoding="utf-8").splitlines():
                line = line.strip()
                if not line:
                    continue
                try:
                    item = json.loads(line)
                except ValueError:
                    continue
                if isinstance(item, dict):
                    out.append(item)
        except Exception:
            logger.exception(f"Failed to read transcript for session {session_id}")
            return []
        out.sort(key=lambda e: int(e.get("sequence_number") or 0))
        return out


def history_from_transcript(entries: list[dict]) -> list[dict]:
    """Rebuild chat history (user/assistant only) from transcript lines."""
    history: list[dict] = []
    for e in entries:
        content = str(e.get("content") or "").strip()
        if not content:
            continue
        role = "assistant" if e.get("speaker") == "agent" else "user"
        history.append({"role": role, "content": content})
    return history


class DocumentStore:
    def __init__(self, root: Path):
        self.root = Path(root) / "prd"

    def _path(self, case_id) -> Path:
        return self.root / f"{_safe_component(case_id)}.json"

    def load(self, case_id, schema: DocumentSchema) -> StructuredDocument | None:
        path = self._path(case_id)
        try:
            if path.is_file():
                data = json.loads(path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    return StructuredDocument.from_dict(data, schema)
        except Exception:
            logger.exception(f"Failed to load document for case {case_id}")
        return None

    def save(self, case_id, document: StructuredDocument) -> None:
        data = document.to_dict()
        data["case_id"] = case_id
        data["markdown"] = document.to_markdown()
        data["updated_at"] = datetime.now().isoformat()
        try:
            _write_json_atomic(self._path(case_id), data)
        except Exception:
            logger.exception(f"Failed to save document for case {case_id}")


class ArtifactStore:
    def __init__(self, root: Path):
        self.root = Path(root) / "artifacts"

    def save(self, filename: str, data: bytes, *, mime_type: str = "application/octet-stream", case_id=None) -> Path:
        folder = self.root / (_safe_component(case_id) if case_id is not None else "unassigned")
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / _safe_component(filename)
        path.write_bytes(data)
        meta = {
            "filename": path.name,
            "mime_type": mime_type,
            "size_bytes": len(data),
            "case_id": case_id,
            "created_at": datetime.now().isoformat(),
        }
        path.with_name(path.name + ".meta.json").write_text(json.dumps(meta, indent=2), encoding="utf-8")
        return path


class AuditLog:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, event_type: str, payload: dict, *, session_id=None, case_id=None) -> None:
        entry = {
            "event_type": event_type,
            "session_id": session_id,
            "case_id": case_id,
            "payload": payload,
            "created_at": datetime.now().isoformat(),
        }
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

    def read(self) -> list[dict]:
        if not self.path.is_file():
            return []
        out = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            try:
                out.append(json.loads(line))
            except ValueError:
                continue
        return out


_LEAD_FIELDS = (
    ("company", "Company"),
    ("industry", "Industry"),
    ("companySize", "Size"),
    ("needTypes", "Need types"),
    ("description", "Description"),
    ("painPoints", "Pain points"),
    ("expectedOutcome", "Expected outcome"),
    ("existingTools", "Existing tools"),
)


class CaseStore:
    def __init__(self, root: Path):
        self.root = Path(root) / "cases"

    def load(self, case_id) -> dict | None:
        path = self.root / f"{_safe_component(case_id)}.json"
        try:
            if path.is_file():
                data = json.loads(path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    return data
        except Exception:
            logger.exception(f"Failed to load case {case_id}")
        return None

    def lead_context(self, case_id) -> str:
        data = self.load(case_id)
        if not data:
            return ""
        lead = data.get("lead") if isinstance(data.get("lead"), dict) else data

        lines = []
        contact = str(lead.get("contactName") or "").strip()
        title = str(lead.get("title") or "").strip()
        for key, label in _LEAD_FIELDS:
            value = lead.get(key)
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value if str(v).strip())
            value = str(value or "").strip()
            if value:
                lines.append(f"{label}: {value}")
            if key == "company" and contact:
                lines.append(f"Contact: {contact}" + (f" ({title})" if title else ""))
        return "\n".join(lines)
