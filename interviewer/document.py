from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DocumentSchema:
    """Closed, ordered set of section keys a document may hold."""

    name: str
    keys: tuple[str, ...]
    labels: dict[str, str]

    def label(self, key: str) -> str:
        return self.labels.get(key, key)

    def __contains__(self, key: object) -> bool:
        return key in self.keys


PRD_SCHEMA = DocumentSchema(
    name="prd",
    keys=(
        "background",
        "users",
        "scope",
        "asIs",
        "toBe",
        "userStories",
        "acceptance",
        "dataModel",
        "permissions",
        "nonFunctional",
        "kpi",
        "risks",
        "mvpScope",
    ),
    labels={
        "background": "Background & Goals",
        "users": "Users & Scenarios",
        "scope": "Scope (In / Out)",
        "asIs": "Current Process (AS-IS)",
        "toBe": "Target Process (TO-BE)",
        "userStories": "Functional Requirements (User Stories)",
        "acceptance": "Acceptance Criteria",
        "dataModel": "Data & Fields",
        "permissions": "Permissions & Roles",
        "nonFunctional": "Non-functional Requirements",
        "kpi": "Success Metrics (KPI)",
        "risks": "Risks & Dependencies",
        "mvpScope": "MVP Cut",
    },
)

INTAKE_SCHEMA = DocumentSchema(
    name="intake",
    keys=("background", "currentState", "painPoints", "expectedOutcome"),
    labels={
        "background": "Company / Team Background",
        "currentState": "Current Way of Working",
        "painPoints": "Pain Points",
        "expectedOutcome": "Expected Outcome",
    },
)


@dataclass(frozen=True)
class SectionUpdateResult:
    ok: bool
    completeness: int = 0
    key: str = ""
    error: str = ""

    def to_payload(self) -> dict:
        if self.ok:
            return {"success": True, "sectionKey": self.key, "completeness": self.completeness}
        return {"success": False, "error": self.error}


def _is_filled(value: str | None) -> bool:
    return bool(value and value.strip())


@dataclass
class StructuredDocument:
    schema: DocumentSchema
    sections: dict[str, str] = field(default_factory=dict)
    completeness: int = 0
    last_updated_section: str | None = None
    version: int = 0
    is_complete: bool = False
    summary: str = ""

    def __post_init__(self) -> None:
        self.sections = {k: v for k, v in (self.sections or {}).items() if k in self.schema and isinstance(v, str)}
        self.completeness = self._compute_completeness()

    def _compute_completeness(self) -> int:
        total = len(self.schema.keys)
        if total == 0:
            return 0
        filled = sum(1 for k in self.schema.keys if _is_filled(self.sections.get(k)))
        # Half-up rounding; Python's round() is banker's rounding.
        return int((200 * filled + total) // (2 * total))

    def filled_keys(self) -> list[str]:
        return [k for k in self.schema.keys if _is_filled(self.sections.get(k))]

    def missing_keys(self) -> list[str]:
        return [k for k in self.schema.keys if not _is_filled(self.sections.get(k))]

    def apply_section_update(self, key: str, content: str) -> SectionUpdateResult:
        if key not in self.schema:
            return SectionUpdateResult(ok=False, error=f"Invalid section key: {key!r}")
        if not isinstance(content, str) or not content.strip():
            return SectionUpdateResult(ok=False, error=f"Empty content for section {key!r}")

        self.sections[key] = content
        self.last_updated_section = key
        self.version += 1
        self.completeness = self._compute_completeness()
        return SectionUpdateResult(ok=True, completeness=self.completeness, key=key)

    def mark_complete(self, summary: str) -> None:
        if self.schema.name != INTAKE_SCHEMA.name:
            raise ValueError("mark_complete is only valid for intake documents")
        self.is_complete = True
        self.summary = summary or ""
        self.version += 1

    def to_markdown(self) -> str:
        parts = []
        for key in self.schema.keys:
            content = self.sections.get(key)
            if not _is_filled(content):
                continue
            parts.append(f"## {self.schema.label(key)}\n\n{content.strip()}")
        return "\n\n---\n\n".join(parts)

    def snapshot(self) -> dict[str, str]:
        return {k: self.sections.get(k, "") for k in self.schema.keys}

    def to_dict(self) -> dict:
        return {
            "schema": self.schema.name,
            "sections": dict(self.sections),
            "completeness": self.completeness,
            "last_updated_section": self.last_updated_section,
            "version": self.version,
            "is_complete": self.is_complete,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict, schema: DocumentSchema) -> "StructuredDocument":
        sections = data.get("sections") if isinstance(data, dict) else None
        doc = cls(schema=schema, sections=dict(sections or {}))
        last = data.get("last_updated_section") if isinstance(data, dict) else None
        doc.last_updated_section = last if last in schema else None
        try:
            doc.version = max(0, int(data.get("version") or 0))
        except (TypeError, ValueError):
            doc.version = 0
        doc.is_complete = bool(data.get("is_complete", False))
        doc.summary = str(data.get("summary") or "")
        return doc
