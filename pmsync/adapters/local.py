"""Local PM adapter backed by ``.hodge/project_management.md``.

The markdown file is the always-on mirror of feature status. It is handled as
an ordered list of ``##`` sections: each mutation touches only the sections it
needs and every other section is written back byte for byte.

All file access runs in a worker thread and every operation that reads or
writes the file holds the adapter's lock, so concurrent calls on one instance
apply one after another.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from ..errors import FeatureNotFoundError, StorageError, ValidationError
from ..models import LOCAL_STATUSES, PMAdapterConfig, PMIssue, PMState, utc_now
from ..pmsync_logging import log_operation, log_performance, log_status_mirrored
from .base import BasePMAdapter

T = TypeVar("T")

PM_FILE = "project_management.md"

ACTIVE_SECTION = "Active Features"
COMPLETED_SECTION = "Completed Features"
PHASES_SECTION = "Implementation Phases"
DEPENDENCIES_SECTION = "Dependencies Graph"
BACKLOG_SECTION = "Backlog"

FEATURE_SECTIONS = (ACTIVE_SECTION, COMPLETED_SECTION, BACKLOG_SECTION)

LOCAL_STATES = [
    PMState(id="exploring", name="Exploring", type="unstarted"),
    PMState(id="building", name="Building", type="started"),
    PMState(id="hardening", name="Hardening", type="started"),
    PMState(id="shipped", name="Shipped", type="completed"),
]

# Default external status names accepted by update_issue_state
STATUS_ALIASES = {
    "to do": "exploring",
    "todo": "exploring",
    "in progress": "building",
    "in review": "hardening",
    "done": "shipped",
}

_FIELD_LINE = re.compile(r"^- \*\*([^*]+)\*\*:[ \t]*(.*)$")
_CHECKLIST_ITEM = re.compile(r"^\s*-\s+\[([ x~])\]", re.MULTILINE)

TEMPLATE = """# Project Management

## Overview
This file tracks all Hodge features and their implementation status.

## Implementation Phases

### Phase 1: Foundation
- [ ] project-setup

### Phase 2: Core Features
- [ ] core-workflow

### Phase 3: Integration
- [ ] pm-integration

## Dependencies Graph

```
project-setup
└── core-workflow
    └── pm-integration
```

## Active Features

## Completed Features

## Backlog

---
*Generated by Hodge*
"""


def _today() -> str:
    return utc_now().date().isoformat()


def _line_ending(line: str) -> str:
    return "\n" if line.endswith("\n") else ""


@dataclass(slots=True)
class Section:
    """A ``##`` heading line and everything up to the next one."""

    heading: str
    body: str = ""

    @property
    def title(self) -> str:
        return self.heading.strip()[2:].strip()


@dataclass(slots=True)
class ProjectDocument:
    """project_management.md as a preamble plus ordered ``##`` sections."""

    preamble: str = ""
    sections: List[Section] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "ProjectDocument":
        doc = cls()
        current: Optional[Section] = None
        in_fence = False
        buffer: List[str] = []

        for line in text.splitlines(keepends=True):
            if line.lstrip().startswith("```"):
                in_fence = not in_fence
            if not in_fence and line.startswith("## "):
                if current is None:
                    doc.preamble = "".join(buffer)
                else:
                    current.body = "".join(buffer)
                current = Section(heading=line)
                doc.sections.append(current)
                buffer = []
                continue
            buffer.append(line)

        if current is None:
            doc.preamble = "".join(buffer)
        else:
            current.body = "".join(buffer)
        return doc

    def render(self) -> str:
        return self.preamble + "".join(s.heading + s.body for s in self.sections)

    def section(self, title: str) -> Optional[Section]:
        return next((s for s in self.sections if s.title == title), None)

    def insert_section(self, section: Section, before: Optional[str] = None) -> None:
        """Insert before the named section, or append when it is absent."""
        for index, existing in enumerate(self.sections):
            if existing.title == before:
                self.sections.insert(index, section)
                return
        if self.sections and not self.sections[-1].body.endswith("\n"):
            self.sections[-1].body += "\n"
        self.sections.append(section)

    def has_feature(self, feature: str) -> bool:
        header = f"### {feature}"
        return any(line.strip() == header for line in self.render().splitlines())

    def find_feature(self, feature: str) -> Optional[Tuple[Section, int, int, List[str]]]:
        """Section holding feature's block, with the block's line span."""
        for title in FEATURE_SECTIONS:
            section = self.section(title)
            if section is None:
                continue
            lines = section.body.splitlines(keepends=True)
            span = _locate_block(lines, feature)
            if span:
                return section, span[0], span[1], lines
        return None

    def iter_features(self) -> Iterator[Tuple[str, List[str]]]:
        for title in FEATURE_SECTIONS:
            section = self.section(title)
            if section is None:
                continue
            lines = section.body.splitlines(keepends=True)
            for index, line in enumerate(lines):
                if line.startswith("### "):
                    span = _locate_block(lines, line[4:].strip(), start=index)
                    if span:
                        yield line[4:].strip(), lines[span[0]:span[1]]


def _locate_block(lines: List[str], feature: str, start: int = 0) -> Optional[Tuple[int, int]]:
    header = f"### {feature}"
    for index in range(start, len(lines)):
        if lines[index].strip() == header:
            end = index + 1
            while end < len(lines) and not lines[end].startswith("### "):
                end += 1
            return index, end
    return None


def _block_fields(block: List[str]) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for line in block:
        match = _FIELD_LINE.match(line.rstrip("\n"))
        if match:
            fields[match.group(1).strip()] = match.group(2).strip()
    return fields


def _set_field(block: List[str], name: str, value: str) -> List[str]:
    prefix = f"- **{name}**:"
    return [f"{prefix} {value}{_line_ending(line)}" if line.startswith(prefix) else line for line in block]


def _feature_block(feature: str, description: str, phase: Optional[str]) -> str:
    date = _today()
    return (
        f"### {feature}\n"
        "- **Status**: exploring\n"
        "- **Priority**: TBD\n"
        f"- **Created**: {date}\n"
        f"- **Updated**: {date}\n"
        f"- **Description**: {description}\n"
        f"- **Phase**: {phase or 'TBD'}\n"
        "- **Next Steps**:\n"
        "  - Complete exploration\n"
        "  - Define test intentions\n"
        "  - Make architectural decisions\n"
    )


class LocalPMAdapter(BasePMAdapter):
    """Markdown mirror of the feature workflow, active with or without a PM tool."""

    tool_name = "local"

    def __init__(self, base_path: Path | str = "."):
        super().__init__(PMAdapterConfig(tool="local"), base_path=base_path)
        self.pm_path = self.base_path / ".hodge" / PM_FILE
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def _serialized(self, func: Callable[[], T]) -> T:
        async with self._get_lock():
            return await asyncio.to_thread(func)

    def _ensure_file(self) -> bool:
        try:
            self.pm_path.parent.mkdir(parents=True, exist_ok=True)
            with self.pm_path.open("x", encoding="utf-8") as handle:
                handle.write(TEMPLATE)
        except FileExistsError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to create {self.pm_path}: {e}", self.pm_path) from e
        self.logger.info(f"Created {PM_FILE} with project plan")
        return True

    def _read(self) -> ProjectDocument:
        try:
            return ProjectDocument.parse(self.pm_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StorageError(f"Failed to read {self.pm_path}: {e}", self.pm_path) from e

    def _write(self, doc: ProjectDocument) -> None:
        try:
            self.pm_path.write_text(doc.render(), encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to update {self.pm_path}: {e}", self.pm_path) from e

    def _mutate(self, change: Callable[[ProjectDocument], T]) -> T:
        """Read, apply change and write back if the rendered text differs."""
        self._ensure_file()
        doc = self._read()
        before = doc.render()
        result = change(doc)
        if doc.render() != before:
            self._write(doc)
        return result

    # ------------------------------------------------------------------
    # Mirror maintenance
    # ------------------------------------------------------------------

    async def init(self) -> bool:
        """Create the file from the template if absent. Never overwrites."""
        return await self._serialized(self._ensure_file)

    @log_performance("local_add_feature")
    async def add_feature(self, feature: str, description: str, phase: Optional[str] = None) -> bool:
        """Append a feature block under Active Features; False if already tracked."""
        if not feature or not isinstance(feature, str):
            raise ValidationError("Feature ID must be a non-empty string")

        def change(doc: ProjectDocument) -> bool:
            if doc.has_feature(feature):
                self.logger.warning(f"Feature {feature} already exists")
                return False
            active = doc.section(ACTIVE_SECTION)
            if active is None:
                raise StorageError(f"{ACTIVE_SECTION} section not found in {PM_FILE}", self.pm_path)
            stripped = active.body.rstrip("\n")
            active.body = (stripped + "\n" if stripped else "") + "\n" + _feature_block(
                feature, description, phase
            ) + "\n"
            return True

        with log_operation("local_add_feature", feature=feature):
            added = await self._serialized(lambda: self._mutate(change))
        if added:
            self.logger.info(f"Added {feature} to project management tracking")
        return added

    @log_performance("local_update_feature_status")
    async def update_feature_status(self, feature: str, status: str) -> None:
        """Mirror a status change into phase checklists and the feature block."""
        if not feature or not isinstance(feature, str):
            raise ValidationError("Feature ID must be a non-empty string")
        if status not in LOCAL_STATUSES:
            raise ValidationError(f"Invalid status '{status}'. Must be one of: {', '.join(LOCAL_STATUSES)}")

        def change(doc: ProjectDocument) -> None:
            self._toggle_checklist(doc, feature, status)
            found = doc.find_feature(feature)
            if found is None:
                self.logger.warning(f"Feature {feature} has no block in {PM_FILE}")
                return
            section, start, end, lines = found
            block = _set_field(lines[start:end], "Status", status)
            block = _set_field(block, "Updated", _today())
            if status == "shipped" and section.title != COMPLETED_SECTION:
                section.body = "".join(lines[:start] + lines[end:])
                self._add_completed(doc, block)
            else:
                section.body = "".join(lines[:start] + block + lines[end:])

        await self._serialized(lambda: self._mutate(change))
        self.logger.info(f"Updated {feature} status to: {status}")
        log_status_mirrored(feature, status)

    def _toggle_checklist(self, doc: ProjectDocument, feature: str, status: str) -> None:
        phases = doc.section(PHASES_SECTION)
        if phases is None:
            return
        if status == "shipped":
            markers, target = "[ ~]", "x"
        elif status in ("building", "hardening"):
            markers, target = "[ ]", "~"
        else:
            return
        pattern = re.compile(
            rf"^(\s*-\s+)\[{markers}\](\s+{re.escape(feature)})(?=[:\s]|$)",
            re.MULTILINE,
        )
        phases.body = pattern.sub(rf"\g<1>[{target}]\g<2>", phases.body)

    def _add_completed(self, doc: ProjectDocument, block: List[str]) -> None:
        entry = "".join(block).rstrip("\n") + "\n"
        if "Completed" not in _block_fields(block):
            entry += f"- **Completed**: {_today()}\n"

        completed = doc.section(COMPLETED_SECTION)
        if completed is None:
            completed = Section(heading=f"## {COMPLETED_SECTION}\n")
            doc.insert_section(completed, before=BACKLOG_SECTION)
        rest = completed.body.lstrip("\n")
        completed.body = "\n" + entry + "\n" + rest

    async def update_phase_progress(self) -> bool:
        """Mark each phase whose checklist is fully done with a check mark."""

        def change(doc: ProjectDocument) -> bool:
            phases = doc.section(PHASES_SECTION)
            if phases is None:
                return False
            lines = phases.body.splitlines(keepends=True)
            changed = False
            headings = [i for i, line in enumerate(lines) if line.startswith("### ")]
            for position, index in enumerate(headings):
                end = headings[position + 1] if position + 1 < len(headings) else len(lines)
                markers = _CHECKLIST_ITEM.findall("".join(lines[index + 1:end]))
                heading = lines[index]
                if markers and all(m == "x" for m in markers) and "✅" not in heading:
                    lines[index] = heading.rstrip() + " ✅" + _line_ending(heading)
                    changed = True
            if changed:
                phases.body = "".join(lines)
            return changed

        changed = await self._serialized(lambda: self._mutate(change))
        if changed:
            self.logger.info("Updated project plan phase progress")
        return changed

    async def sync_from_external(self, updates: List[Dict[str, str]]) -> None:
        """Apply a batch of ``{"feature", "status"}`` updates, then recompute phases."""
        for update in updates:
            await self.update_feature_status(update["feature"], update["status"].lower())
        await self.update_phase_progress()

    # ------------------------------------------------------------------
    # PM adapter surface
    # ------------------------------------------------------------------

    def _issue_from_block(self, feature: str, block: List[str]) -> PMIssue:
        fields = _block_fields(block)
        status = fields.get("Status", "exploring")
        state = next((s for s in LOCAL_STATES if s.id == status), PMState(id=status, name=status))
        description = fields.get("Description") or None
        return PMIssue(
            id=feature,
            title=description or feature,
            description=description,
            state=state,
            url=f"{self.pm_path.resolve().as_uri()}#{feature.lower()}",
        )

    async def fetch_states(self, project_id: Optional[str] = None) -> List[PMState]:
        return list(LOCAL_STATES)

    async def get_issue(self, issue_id: str) -> PMIssue:
        def read() -> PMIssue:
            self._ensure_file()
            found = self._read().find_feature(issue_id)
            if found is None:
                raise FeatureNotFoundError(issue_id, f"Feature {issue_id} not found in {PM_FILE}")
            _, start, end, lines = found
            return self._issue_from_block(issue_id, lines[start:end])

        return await self._serialized(read)

    async def update_issue_state(self, issue_id: str, state_id: str) -> None:
        """Accepts local statuses and the default PM status names."""
        wanted = state_id.strip().lower()
        status = wanted if wanted in LOCAL_STATUSES else STATUS_ALIASES.get(wanted)
        if status is None:
            raise ValidationError(f"Unknown local state '{state_id}'")
        await self.update_feature_status(issue_id, status)

    async def search_issues(self, query: str) -> List[PMIssue]:
        needle = query.lower()

        def search() -> List[PMIssue]:
            self._ensure_file()
            return [
                self._issue_from_block(feature, block)
                for feature, block in self._read().iter_features()
                if needle in "".join(block).lower()
            ]

        return await self._serialized(search)

    async def create_issue(self, title: str, description: Optional[str] = None) -> PMIssue:
        """``title`` is the feature ID; the block is added if not yet tracked."""
        await self.add_feature(title, description or title)
        return await self.get_issue(title)

    async def append_comment(self, issue_id: str, comment: str) -> None:
        """Append a dated note, quoted so it cannot open new headings."""
        if not comment or not isinstance(comment, str):
            raise ValidationError("Comment body is required")
        quoted = "".join(f"  > {line}".rstrip() + "\n" for line in comment.strip().splitlines())
        note = [f"- **Comment** ({_today()}):\n", quoted]

        def change(doc: ProjectDocument) -> None:
            found = doc.find_feature(issue_id)
            if found is None:
                raise FeatureNotFoundError(issue_id, f"Feature {issue_id} not found in {PM_FILE}")
            section, start, end, lines = found
            block = lines[start:end]
            content_end = len(block)
            while content_end > 1 and not block[content_end - 1].strip():
                content_end -= 1
            if not block[content_end - 1].endswith("\n"):
                block[content_end - 1] += "\n"
            block = block[:content_end] + note + block[content_end:]
            section.body = "".join(lines[:start] + block + lines[end:])

        await self._serialized(lambda: self._mutate(change))

    async def cancel_issue(self, issue_id: str) -> None:
        """The mirror has no canceled state; the feature is left as is."""
        self.logger.debug(f"Ignoring cancel for local feature {issue_id}")

    def is_valid_issue_id(self, value: str) -> bool:
        return bool(re.fullmatch(r"HOD(GE)?-\d+", value.strip()))
