import time
from pathlib import Path

import pytest

from atomic_files import write_atomically
from queue_config import ensure_queue_folders
from queue_manager import QueueManager

PLAN_TEXT = """\
---
id: test-plan-123
version: 1
agent: test-agent
session: agent:test:main
tag: test-tag
title: Test Plan
priority: normal
status: pending
created_at: 2026-01-30T00:00:00Z
updated_at: 2026-01-30T00:00:00Z
completed_at: null
total: 2
answered: 0
remaining: 2
notify_session: agent:notify:main
---

# Test Plan

This is the context for the test plan.

---

## Decision 1: First Choice

id: first-choice
status: pending
answer: null
answered_at: null

**Context:** What should we choose first?

**Options:**
- `option-a` — Option A description
- `option-b` — Option B description

---

## Decision 2: Second Choice

id: second-choice
status: pending
answer: null
answered_at: null
allow_custom: true

**Context:** What should we choose second?

**Options:**
- `yes` — Yes option
- `no` — No option
"""


def make_plan_text(plan_id: str = "test-plan-123", **fields: str) -> str:
    """PLAN_TEXT with a different id and any frontmatter values swapped."""
    text = PLAN_TEXT.replace("id: test-plan-123", f"id: {plan_id}")
    for key, value in fields.items():
        lines = []
        for line in text.split("\n"):
            if line.startswith(f"{key}:"):
                line = f"{key}: {value}"
            lines.append(line)
        text = "\n".join(lines)
    return text


def wait_for(condition, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


@pytest.fixture
def queue_dir(tmp_path: Path) -> Path:
    root = tmp_path / "queue"
    ensure_queue_folders(root)
    return root


@pytest.fixture
def write_plan(queue_dir: Path):
    def _write(text: str = PLAN_TEXT, name: str = "test-plan.md") -> Path:
        path = queue_dir / "pending" / name
        write_atomically(path, text)
        return path

    return _write


@pytest.fixture
def manager(queue_dir: Path):
    mgr = QueueManager(queue_dir, watch_interval=0.05, debounce=0.01, use_events=False)
    yield mgr
    mgr.shutdown()
