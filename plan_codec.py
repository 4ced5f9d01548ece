"""Plan codec — turns a decision markdown file into a Plan and back.

Decoding builds the typed model up front.  Encoding never re-serialises the
whole file: it edits the handful of lines that change (a decision's
status/answer/answered_at, or the frontmatter counters) and leaves every
other byte alone, so fields and comments this module doesn't know about
survive the round trip.

FILE FORMAT
-----------
    ---
    id: plan-123
    agent: research-agent
    session: agent:research:main
    title: Pick a database
    status: pending
    priority: high
    ---

    # Pick a database

    Optional free context.

    ---

    ## Decision 1: Engine

    id: engine
    status: pending
    answer: null
    answered_at: null
    allow_custom: true

    **Context:** Which engine should we use?

    **Options:**
    - `postgres` — PostgreSQL
    - `sqlite` — SQLite
"""

import hashlib
import logging
import re
from pathlib import Path

from plan_models import (
    PLAN_STATUSES,
    PRIORITIES,
    DEFAULT_PRIORITY,
    DECISION_ANSWERED,
    DECISION_SKIPPED,
    SKIP_SENTINEL,
    Decision,
    Notification,
    Option,
    Plan,
    utc_now,
)

logger = logging.getLogger("PlanCodec")

REQUIRED_KEYS = ("id", "agent", "session", "title", "status")

# snake_case name -> every spelling accepted in a document
KEY_ALIASES: dict[str, tuple[str, ...]] = {
    "created_at": ("created_at", "createdAt"),
    "updated_at": ("updated_at", "updatedAt"),
    "completed_at": ("completed_at", "completedAt"),
    "notify_session": ("notify_session", "notifySession"),
}

DECISION_KEYS = ("id", "status", "answer", "answered_at", "allow_custom")
NULL_VALUES = {"", "null", "~", "None"}
QUOTES = ("\"", "'")

DECISION_HEADING_RE = re.compile(r"^##[ \t]+Decision[ \t]+\d+:[ \t]*(.*?)[ \t]*$", re.IGNORECASE)
DECISION_KEY_RE = re.compile(r"^(%s):[ \t]*(.*)$" % "|".join(DECISION_KEYS))
TITLE_HEADING_RE = re.compile(r"^#[ \t]+.+(?:\r?\n)*", re.MULTILINE)
SEPARATOR_RE = re.compile(r"^-{3,}\s*$", re.MULTILINE)
OPTION_RE = re.compile(r"^[-*]\s+(?:`([^`]+)`|([^\s`]+))(?:\s*[—–-]\s*(.+))?$")
FRONTMATTER_KEY_RE = re.compile(r"^(\s*)([A-Za-z_][\w-]*)\s*:")


# ------------------------------------------------------------------
# Line helpers
# ------------------------------------------------------------------

def _line_ending(line: str) -> str:
    if line.endswith("\r\n"):
        return "\r\n"
    if line.endswith("\n"):
        return "\n"
    return ""


def _frontmatter_bounds(lines: list[str]) -> tuple[int, int] | None:
    """Return (opening, closing) indices of the ``---`` fence lines."""
    if not lines or lines[0].lstrip("\ufeff").strip() != "---":
        return None
    for index in range(1, len(lines)):
        if lines[index].strip() == "---":
            return 0, index
    return None


def _null(value: str) -> str | None:
    return None if value.strip() in NULL_VALUES else value.strip()


def _int(value: str | None, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _render_value(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return " ".join(str(value).split()) if isinstance(value, str) else str(value)


def _render_answer(answer: str) -> str:
    """Render an answer so it can never be read back as unanswered.

    Values that look like a null token, or that are already wrapped in
    quotes, get one extra pair of double quotes.
    """
    text = _render_value(answer)
    if text in NULL_VALUES or (len(text) >= 2 and text[0] == text[-1] and text[0] in QUOTES):
        return f'"{text}"'
    return text


def _decode_answer(value: str) -> str | None:
    text = value.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in QUOTES:
        return text[1:-1]
    return _null(text)


# ------------------------------------------------------------------
# Frontmatter
# ------------------------------------------------------------------

def split_frontmatter(text: str) -> tuple[dict[str, str], str] | None:
    """Split a document into its frontmatter key/value pairs and body.

    Returns None when the document doesn't open with a ``---`` fenced block.
    Values are flat strings; surrounding quotes are stripped.
    """
    lines = text.splitlines(keepends=True)
    bounds = _frontmatter_bounds(lines)
    if bounds is None:
        return None

    opening, closing = bounds
    meta: dict[str, str] = {}
    for raw in lines[opening + 1:closing]:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        colon_idx = line.find(":")
        if colon_idx == -1:
            continue
        key = line[:colon_idx].strip()
        value = line[colon_idx + 1:].strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        meta[key] = value

    return meta, "".join(lines[closing + 1:])


def _lookup(meta: dict[str, str], key: str) -> str | None:
    for spelling in KEY_ALIASES.get(key, (key,)):
        if spelling in meta:
            return meta[spelling]
    return None


def update_frontmatter(text: str, updates: dict) -> str:
    """Rewrite only the given frontmatter keys, leaving the body untouched.

    Existing lines keep their spelling (``updatedAt`` stays ``updatedAt``)
    and indentation.  Keys that aren't present are appended just before
    the closing fence.
    """
    lines = text.splitlines(keepends=True)
    bounds = _frontmatter_bounds(lines)
    if bounds is None:
        raise ValueError("document has no frontmatter block")

    _, closing = bounds
    eol = _line_ending(lines[0]) or "\n"

    for key, value in updates.items():
        spellings = KEY_ALIASES.get(key, (key,))
        rendered = _render_value(value)
        for index in range(1, closing):
            match = FRONTMATTER_KEY_RE.match(lines[index])
            if match and match.group(2) in spellings:
                indent, spelled = match.group(1), match.group(2)
                lines[index] = f"{indent}{spelled}: {rendered}{_line_ending(lines[index]) or eol}"
                break
        else:
            lines.insert(closing, f"{key}: {rendered}{eol}")
            closing += 1

    return "".join(lines)


# ------------------------------------------------------------------
# Decode
# ------------------------------------------------------------------

def _parse_decision(title: str, section: str) -> Decision | None:
    """Parse the text that follows one ``## Decision N:`` heading."""
    fields: dict[str, str] = {}
    context_lines: list[str] = []
    options: list[Option] = []
    in_keys = True
    in_options = False

    for raw in section.splitlines():
        line = raw.strip()
        if not line or SEPARATOR_RE.match(line):
            continue

        if in_keys:
            key_match = DECISION_KEY_RE.match(line)
            if key_match:
                fields.setdefault(key_match.group(1), key_match.group(2).strip())
                continue

        if line.startswith("**Context:**"):
            in_keys = in_options = False
            rest = line[len("**Context:**"):].strip()
            if rest:
                context_lines.append(rest)
        elif line.startswith("**Options:**"):
            in_keys = False
            in_options = True
        elif line.startswith("**"):
            in_keys = in_options = False
        elif in_options:
            option_match = OPTION_RE.match(line)
            if option_match:
                key = option_match.group(1) or option_match.group(2)
                options.append(Option(key.strip(), (option_match.group(3) or "").strip()))
        elif not line.startswith("-"):
            context_lines.append(line)

    decision_id = fields.get("id", "").strip()
    if not decision_id:
        return None

    return Decision(
        id=decision_id,
        title=title,
        answer=_decode_answer(fields.get("answer", "")),
        answered_at=_null(fields.get("answered_at", "")),
        context=" ".join(context_lines).strip(),
        options=options,
        allow_custom=fields.get("allow_custom", "").strip().lower() == "true",
    )


def _plan_context(text: str) -> str:
    text = TITLE_HEADING_RE.sub("", text, count=1)
    return SEPARATOR_RE.split(text, maxsplit=1)[0].strip()


def parse_body(body: str, source: str = "<memory>") -> tuple[str, list[Decision]]:
    """Split a body into its leading context and its decision list."""
    lines = body.splitlines(keepends=True)
    headings = [
        (index, match.group(1))
        for index, match in ((i, DECISION_HEADING_RE.match(l.rstrip("\r\n"))) for i, l in enumerate(lines))
        if match
    ]

    first = headings[0][0] if headings else len(lines)
    context = _plan_context("".join(lines[:first]))

    decisions: list[Decision] = []
    seen: set[str] = set()
    for position, (start, title) in enumerate(headings):
        end = headings[position + 1][0] if position + 1 < len(headings) else len(lines)
        decision = _parse_decision(title, "".join(lines[start + 1:end]))
        if decision is None:
            logger.warning("Discarding decision section without id: '%s' in %s", title, source)
            continue
        if decision.id in seen:
            logger.warning("Discarding duplicate decision id '%s' in %s", decision.id, source)
            continue
        seen.add(decision.id)
        decisions.append(decision)

    return context, decisions


def count_answers(decisions: list[Decision]) -> tuple[int, int, int]:
    """Return (total, answered, remaining) for a decision list."""
    total = len(decisions)
    answered = sum(1 for d in decisions if d.answer is not None)
    return total, answered, total - answered


def decode_plan(text: str, file_path: Path | None = None, now: str | None = None) -> Plan | None:
    """Decode a raw document into a Plan.

    Returns None (and logs why) when the frontmatter is missing or lacks a
    required key.  Counters are always recomputed from the decision list;
    the stored ``total``/``answered``/``remaining`` are only diagnostics.
    Timestamps missing from the document default to *now*.
    """
    source = file_path.name if file_path else "<memory>"
    split = split_frontmatter(text)
    if split is None:
        logger.warning("No frontmatter block in %s", source)
        return None

    meta, body = split
    for key in REQUIRED_KEYS:
        if not meta.get(key):
            logger.warning("Missing required frontmatter field '%s' in %s", key, source)
            return None

    status = meta["status"].strip()
    if status not in PLAN_STATUSES:
        logger.warning("Unknown plan status '%s' in %s", status, source)
        return None

    priority = meta.get("priority", DEFAULT_PRIORITY).strip() or DEFAULT_PRIORITY
    if priority not in PRIORITIES:
        logger.warning("Unknown priority '%s' in %s — using '%s'", priority, source, DEFAULT_PRIORITY)
        priority = DEFAULT_PRIORITY

    context, decisions = parse_body(body, source)
    total, answered, remaining = count_answers(decisions)

    stored = (_int(meta.get("total"), total), _int(meta.get("answered"), answered))
    if stored != (total, answered):
        logger.debug(
            "Recomputed counters for %s: total %d→%d, answered %d→%d",
            source, stored[0], total, stored[1], answered,
        )

    now = now or utc_now()
    return Plan(
        id=meta["id"].strip(),
        agent=meta["agent"].strip(),
        session=meta["session"].strip(),
        title=meta["title"].strip(),
        status=status,
        version=_int(meta.get("version"), 1),
        tag=meta.get("tag", "").strip(),
        priority=priority,
        created_at=_null(_lookup(meta, "created_at") or "") or now,
        updated_at=_null(_lookup(meta, "updated_at") or "") or now,
        completed_at=_null(_lookup(meta, "completed_at") or ""),
        total=total,
        answered=answered,
        remaining=remaining,
        notify_session=_null(_lookup(meta, "notify_session") or ""),
        context=context,
        decisions=decisions,
        raw_content=text,
        file_path=file_path,
    )


def is_presentable(plan: Plan) -> bool:
    """A plan can be shown to the consumer only if it has at least one decision."""
    return bool(plan.id) and len(plan.decisions) > 0


# ------------------------------------------------------------------
# Encode
# ------------------------------------------------------------------

def update_decision_in_body(text: str, decision_id: str, answer: str, answered_at: str) -> str | None:
    """Record *answer* on one decision section, in place.

    Rewrites that section's ``status:``, ``answer:`` and ``answered_at:``
    lines, inserting any that are missing after the section's last key
    line.  Returns None if no section carries ``id: <decision_id>``.
    """
    lines = text.splitlines(keepends=True)
    bounds = _frontmatter_bounds(lines)
    start = bounds[1] + 1 if bounds else 0
    headings = [i for i in range(start, len(lines)) if DECISION_HEADING_RE.match(lines[i].rstrip("\r\n"))]

    for position, heading in enumerate(headings):
        end = headings[position + 1] if position + 1 < len(headings) else len(lines)
        keys: dict[str, int] = {}
        for index in range(heading + 1, end):
            line = lines[index].strip()
            if line.startswith("**"):
                break
            match = DECISION_KEY_RE.match(line)
            if match:
                keys.setdefault(match.group(1), index)

        if "id" not in keys:
            continue
        if DECISION_KEY_RE.match(lines[keys["id"]].strip()).group(2).strip() != decision_id:
            continue

        eol = _line_ending(lines[heading]) or "\n"
        status = DECISION_SKIPPED if answer == SKIP_SENTINEL else DECISION_ANSWERED
        values = {"status": status, "answer": _render_answer(answer), "answered_at": answered_at}

        for key, value in values.items():
            if key in keys:
                index = keys[key]
                indent = lines[index][: len(lines[index]) - len(lines[index].lstrip())]
                lines[index] = f"{indent}{key}: {value}{_line_ending(lines[index])}"

        missing = [key for key in values if key not in keys]
        if missing:
            anchor = max(keys.values())
            if not _line_ending(lines[anchor]):
                lines[anchor] += eol
            for offset, key in enumerate(missing, start=1):
                lines.insert(anchor + offset, f"{key}: {values[key]}{eol}")

        return "".join(lines)

    return None


# ------------------------------------------------------------------
# Notifications
# ------------------------------------------------------------------

def _slugify(text: str) -> str:
    """Convert a plan id to a safe filename fragment."""
    text = re.sub(r"[^\w.-]", "_", text.strip()).lstrip(".")
    return text[:80] or "unknown"


def notification_filename(notify_session: str, plan_id: str) -> str:
    """Deterministic name so a re-sent notification overwrites the old one."""
    digest = hashlib.sha256(notify_session.encode("utf-8")).hexdigest()[:12]
    return f"{digest}-{_slugify(plan_id)}.md"


def render_notification(notification: Notification) -> str:
    answer_lines = "".join(
        f"- {decision_id}: {_render_value(answer)}\n"
        for decision_id, answer in notification.answers.items()
    )
    return (
        f"---\n"
        f"plan_id: {notification.plan_id}\n"
        f"plan_title: {_render_value(notification.plan_title)}\n"
        f"agent: {notification.agent}\n"
        f"session: {notification.session}\n"
        f"notify_session: {notification.notify_session}\n"
        f"completed_at: {notification.completed_at}\n"
        f"---\n"
        f"\n"
        f"## Answers\n"
        f"\n"
        f"{answer_lines}"
    )


def decode_notification(text: str) -> Notification | None:
    """Read a notification back (the producer side of the hand-off)."""
    split = split_frontmatter(text)
    if split is None:
        return None
    meta, body = split
    if not meta.get("plan_id"):
        return None

    answers: dict[str, str] = {}
    for raw in body.splitlines():
        line = raw.strip()
        if not line.startswith("- "):
            continue
        key, sep, value = line[2:].partition(":")
        if sep:
            answers[key.strip()] = value.strip()

    return Notification(
        plan_id=meta["plan_id"],
        plan_title=meta.get("plan_title", ""),
        agent=meta.get("agent", ""),
        session=meta.get("session", ""),
        notify_session=meta.get("notify_session", ""),
        completed_at=meta.get("completed_at", ""),
        answers=answers,
    )
