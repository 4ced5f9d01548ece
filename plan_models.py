"""Plan / Decision entities for the decision queue.

A Plan is one markdown file in the queue's pending/ folder: a frontmatter
block of metadata followed by a body made of "## Decision N: Title"
sections.  These classes are the typed view of that file; the raw text is
kept alongside so edits can be made without re-serialising everything.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path

# ------------------------------------------------------------------
# Vocabularies
# ------------------------------------------------------------------

PRIORITIES = ("urgent", "high", "normal", "low")
PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITIES)}
DEFAULT_PRIORITY = "normal"

PLAN_STATUSES = ("pending", "in_progress", "ready", "completed")
PLAN_STATUS_RANK = {name: rank for rank, name in enumerate(PLAN_STATUSES)}

DECISION_PENDING = "pending"
DECISION_ANSWERED = "answered"
DECISION_SKIPPED = "skipped"

# Reserved answer value meaning "explicitly skipped"
SKIP_SENTINEL = "__skipped__"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> datetime:
    """Parse an ISO-8601 string into an aware datetime.

    Naive values are taken as UTC.  Unparseable or empty values sort last.
    """
    if not value:
        return datetime.max.replace(tzinfo=timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return datetime.max.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------

class QueueError(Exception):
    """Base class for failures the caller should report to the consumer."""


class DecisionNotFoundError(QueueError):
    """The plan exists but has no decision with the requested id."""

    def __init__(self, plan_id: str, decision_id: str) -> None:
        super().__init__(f"Decision '{decision_id}' not found in plan '{plan_id}'")
        self.plan_id = plan_id
        self.decision_id = decision_id


class PlanStateError(QueueError):
    """The requested transition is not allowed from the plan's current status."""

    def __init__(self, plan_id: str, status: str, action: str) -> None:
        super().__init__(f"Cannot {action} plan '{plan_id}' while it is '{status}'")
        self.plan_id = plan_id
        self.status = status
        self.action = action


class RelocationError(QueueError):
    """A document could not be moved into its destination folder."""

    def __init__(self, src: Path, dest: Path, reason: str) -> None:
        super().__init__(f"Cannot move {src.name} to {dest.parent}: {reason}")
        self.src = src
        self.dest = dest
        self.reason = reason


# ------------------------------------------------------------------
# Entities
# ------------------------------------------------------------------

@dataclass(frozen=True)
class Option:
    key: str
    label: str = ""


@dataclass
class Decision:
    """One question inside a plan.

    ``status`` is derived from ``answer`` and never stored separately, so a
    stale ``status:`` line in the file can't disagree with the answer.
    """

    id: str
    title: str = ""
    answer: str | None = None
    answered_at: str | None = None
    context: str = ""
    options: list[Option] = field(default_factory=list)
    allow_custom: bool = False

    @property
    def status(self) -> str:
        if self.answer is None:
            return DECISION_PENDING
        if self.answer == SKIP_SENTINEL:
            return DECISION_SKIPPED
        return DECISION_ANSWERED

    @property
    def option_keys(self) -> list[str]:
        return [opt.key for opt in self.options]


@dataclass
class Plan:
    id: str
    agent: str
    session: str
    title: str
    status: str
    version: int = 1
    tag: str = ""
    priority: str = DEFAULT_PRIORITY
    created_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None
    total: int = 0
    answered: int = 0
    remaining: int = 0
    notify_session: str | None = None
    context: str = ""
    decisions: list[Decision] = field(default_factory=list)
    raw_content: str = ""
    file_path: Path | None = None

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK.get(self.priority, PRIORITY_RANK[DEFAULT_PRIORITY])

    @property
    def sort_key(self) -> tuple[int, datetime]:
        return (self.priority_rank, parse_timestamp(self.created_at))

    def find_decision(self, decision_id: str) -> Decision | None:
        for decision in self.decisions:
            if decision.id == decision_id:
                return decision
        return None

    def first_pending_index(self) -> int | None:
        for index, decision in enumerate(self.decisions):
            if decision.answer is None:
                return index
        return None

    def answers(self) -> dict[str, str]:
        return {d.id: d.answer for d in self.decisions if d.answer is not None}

    def moved_to(self, path: Path) -> "Plan":
        return replace(self, file_path=path)


@dataclass
class Notification:
    plan_id: str
    plan_title: str
    agent: str
    session: str
    notify_session: str
    completed_at: str
    answers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def for_plan(cls, plan: Plan) -> "Notification":
        return cls(
            plan_id=plan.id,
            plan_title=plan.title,
            agent=plan.agent,
            session=plan.session,
            notify_session=plan.notify_session or "",
            completed_at=plan.completed_at or utc_now(),
            answers=plan.answers(),
        )


@dataclass
class QueueStats:
    urgent: int = 0
    high: int = 0
    normal: int = 0
    low: int = 0
    total: int = 0
