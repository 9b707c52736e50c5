"""Markdown encoding of task records.

A task file is human-editable markdown with a two-column metadata table
and a ``## Work Log`` section of ``### YYYY-MM-DD HH:MM - Title`` entries.
Everything else is free-form body text that orchestration never reads.

The filename is the authoritative source of a task's id; the ``ID`` row
is informational and rewritten only by a privileged reprioritization.
"""

import re
from datetime import datetime
from typing import Optional

from .models import Priority, TaskId, TaskRecord, TaskState, WorkLogEntry

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"

METADATA_FIELDS = [
    "ID",
    "Status",
    "Priority",
    "Created",
    "Started",
    "Completed",
    "Blocked By",
    "Blocks",
    "Assigned To",
    "Assigned At",
]

WORK_LOG_HEADING = "## Work Log"

_ROW_RE = re.compile(r"^\|\s*(?P<field>[^|]+?)\s*\|\s*(?P<value>.*?)\s*\|\s*$")
_SEPARATOR_RE = re.compile(r"^\|[\s:|-]+\|\s*$")
_LOG_ENTRY_RE = re.compile(r"^### (?P<stamp>\d{4}-\d{2}-\d{2} \d{2}:\d{2}(?::\d{2})?) - (?P<title>.*)$")
_TASK_REF_RE = re.compile(r"\d{3}-\d{3,}-[a-z0-9][a-z0-9-]*")
_TITLE_RE = re.compile(r"^# (?:Task:\s*)?(?P<title>.+)$")


class TaskFormatError(ValueError):
    """A task file could not be parsed."""


def format_timestamp(value: Optional[datetime]) -> str:
    return value.strftime(TIMESTAMP_FORMAT) if value else ""


def parse_timestamp(value: str) -> Optional[datetime]:
    value = value.strip().strip("`").strip()
    if not value or value in ("-", "none"):
        return None
    for fmt in (TIMESTAMP_FORMAT, "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise TaskFormatError(f"Unparseable timestamp {value!r}") from e


def _cell(value: Optional[str]) -> str:
    return f"`{value}`" if value else ""


def _plain(value: str) -> str:
    return value.replace("`", "").strip()


def format_priority(priority: Priority) -> str:
    return f"`{priority.value:03d}` {priority.label}"


def render_field(field: str, record: TaskRecord) -> str:
    """Render one metadata value for ``record``."""
    if field == "ID":
        return _cell(record.task_id)
    if field == "Status":
        return _cell(record.state.value)
    if field == "Priority":
        return format_priority(record.id.priority)
    if field in ("Created", "Started", "Completed", "Assigned At"):
        attr = field.lower().replace(" ", "_")
        return _cell(format_timestamp(getattr(record, attr)))
    if field == "Blocked By":
        return ", ".join(record.blocked_by)
    if field == "Blocks":
        return ", ".join(record.blocks)
    if field == "Assigned To":
        return _cell(record.assigned_to)
    raise KeyError(field)


def render(record: TaskRecord) -> str:
    """Render a full task file for a new record."""
    lines = [f"# Task: {record.title or record.id.slug}", "", "## Metadata", ""]
    lines.append("| Field | Value |")
    lines.append("|-------|-------|")
    for field in METADATA_FIELDS:
        value = render_field(field, record)
        lines.append(f"| {field} | {value} |" if value else f"| {field} | |")
    lines.append("")

    body = record.body.strip("\n")
    if body:
        lines.extend([body, ""])

    lines.append(WORK_LOG_HEADING)
    lines.append("")
    for entry in record.work_log:
        lines.append(_render_log_entry(entry))
    return "\n".join(lines).rstrip("\n") + "\n"


def _render_log_entry(entry: WorkLogEntry) -> str:
    text = f"### {format_timestamp(entry.timestamp)} - {entry.title}\n"
    if entry.body.strip():
        text += "\n" + entry.body.strip("\n") + "\n"
    return text


# =============================================================================
# Parsing
# =============================================================================

def read_metadata(text: str) -> dict[str, str]:
    """Extract the metadata table as a field -> raw cell mapping."""
    fields: dict[str, str] = {}
    for line in text.splitlines():
        if line.startswith("## ") and fields:
            break
        if _SEPARATOR_RE.match(line):
            continue
        match = _ROW_RE.match(line)
        if not match:
            continue
        field = match.group("field")
        if field.lower() == "field":
            continue
        fields[field] = match.group("value")
    return fields


def parse_task_refs(value: str) -> list[str]:
    return _TASK_REF_RE.findall(value)


def parse(text: str, task_id: TaskId, state: TaskState) -> TaskRecord:
    """Parse a task file.

    Args:
        text: File content
        task_id: Id taken from the filename
        state: State taken from the containing directory

    Raises:
        TaskFormatError: If the metadata cannot be interpreted
    """
    fields = read_metadata(text)
    if not fields:
        raise TaskFormatError(f"No metadata table in task {task_id}")

    title = ""
    for line in text.splitlines():
        match = _TITLE_RE.match(line)
        if match:
            title = match.group("title").strip()
            break

    assigned_to = _plain(fields.get("Assigned To", "")) or None
    return TaskRecord(
        id=task_id,
        title=title,
        state=state,
        created=parse_timestamp(fields.get("Created", "")),
        started=parse_timestamp(fields.get("Started", "")),
        completed=parse_timestamp(fields.get("Completed", "")),
        blocked_by=parse_task_refs(fields.get("Blocked By", "")),
        blocks=parse_task_refs(fields.get("Blocks", "")),
        assigned_to=assigned_to,
        assigned_at=parse_timestamp(fields.get("Assigned At", "")),
        body=_extract_body(text),
        work_log=parse_work_log(text),
    )


def _split_sections(text: str) -> list[tuple[str, list[str]]]:
    sections: list[tuple[str, list[str]]] = [("", [])]
    for line in text.splitlines():
        if line.startswith("## "):
            sections.append((line.strip(), []))
        else:
            sections[-1][1].append(line)
    return sections


def _extract_body(text: str) -> str:
    kept = []
    for heading, lines in _split_sections(text):
        if heading in ("", "## Metadata", WORK_LOG_HEADING):
            continue
        kept.append(heading)
        kept.extend(lines)
    return "\n".join(kept).strip("\n")


def parse_work_log(text: str) -> list[WorkLogEntry]:
    entries: list[WorkLogEntry] = []
    for heading, lines in _split_sections(text):
        if heading != WORK_LOG_HEADING:
            continue
        for line in lines:
            match = _LOG_ENTRY_RE.match(line)
            if match:
                entries.append(WorkLogEntry(
                    timestamp=parse_timestamp(match.group("stamp")) or datetime.now(),
                    title=match.group("title").strip(),
                ))
            elif entries:
                entries[-1].body = (entries[-1].body + "\n" + line).strip("\n")
    return entries


# =============================================================================
# Editing
# =============================================================================

def set_fields(text: str, values: dict[str, str]) -> str:
    """Return ``text`` with metadata rows replaced (or added) for ``values``.

    Values are already-rendered cells; an empty string clears the field.
    """
    lines = text.splitlines()
    pending = dict(values)
    last_row = None
    in_table = False

    for i, line in enumerate(lines):
        match = _ROW_RE.match(line)
        if match or _SEPARATOR_RE.match(line):
            in_table = True
            last_row = i
            if match and match.group("field") in pending:
                field = match.group("field")
                value = pending.pop(field)
                lines[i] = f"| {field} | {value} |" if value else f"| {field} | |"
        elif in_table:
            break

    if pending:
        if last_row is None:
            raise TaskFormatError("No metadata table to update")
        extra = [f"| {f} | {v} |" if v else f"| {f} | |" for f, v in pending.items()]
        lines[last_row + 1:last_row + 1] = extra

    return "\n".join(lines) + "\n"


def append_log_entry(text: str, entry: WorkLogEntry) -> str:
    """Return ``text`` with ``entry`` appended to the end of the Work Log."""
    rendered = _render_log_entry(entry)
    lines = text.rstrip("\n").splitlines()

    try:
        start = lines.index(WORK_LOG_HEADING)
    except ValueError:
        return "\n".join(lines) + f"\n\n{WORK_LOG_HEADING}\n\n{rendered}"

    end = len(lines)
    for i in range(start + 1, len(lines)):
        if lines[i].startswith("## "):
            end = i
            break

    before = "\n".join(lines[:end]).rstrip("\n")
    after = "\n".join(lines[end:])
    result = f"{before}\n\n{rendered}"
    if after:
        result += f"\n{after}\n"
    return result
