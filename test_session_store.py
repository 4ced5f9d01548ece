from queue_config import QueueConfig
from session_store import CustomInputSessions


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_set_and_get():
    clock = FakeClock()
    sessions = CustomInputSessions(timeout=300, clock=clock)

    state = sessions.set(42, "plan-1", "first-choice", message_id=7)

    assert sessions.get(42) == state
    assert (state.plan_id, state.decision_id, state.message_id) == ("plan-1", "first-choice", 7)
    assert sessions.is_awaiting(42)
    assert not sessions.is_awaiting(43)


def test_state_expires_after_timeout():
    clock = FakeClock()
    sessions = CustomInputSessions(timeout=300, clock=clock)
    sessions.set(42, "plan-1", "first-choice")

    clock.now += 300
    assert sessions.get(42) is not None

    clock.now += 1
    assert sessions.get(42) is None
    assert not sessions.is_awaiting(42)


def test_new_prompt_replaces_old_one():
    clock = FakeClock()
    sessions = CustomInputSessions(timeout=300, clock=clock)
    sessions.set(42, "plan-1", "first-choice")
    clock.now += 200
    sessions.set(42, "plan-1", "second-choice")
    clock.now += 200

    assert sessions.get(42).decision_id == "second-choice"


def test_clear():
    sessions = CustomInputSessions(clock=FakeClock())
    sessions.set(42, "plan-1", "first-choice")
    sessions.clear(42)
    sessions.clear(99)

    assert sessions.get(42) is None


def test_timeout_comes_from_config(tmp_path):
    sessions = CustomInputSessions.from_config(QueueConfig(queue_dir=tmp_path, session_timeout=30))
    assert sessions.timeout == 30
