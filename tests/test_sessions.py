"""Tests for the quiz session state machine."""
import pytest

from mountain_bot.models import QuizCategory, QuizQuestion
from mountain_bot.sessions import (
    NotSessionOwner,
    QuizSessionManager,
    SessionNotFound,
    compute_score,
    make_session_key,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeScoreStore:
    def __init__(self, result=True):
        self.calls = []
        self.result = result

    def record_best_score(self, user_id, display_name, score, total_time_ms):
        self.calls.append((user_id, display_name, score, total_time_ms))
        return self.result


def questions(count=3):
    return [
        QuizQuestion(f"q{i}", QuizCategory.NAME, f"問題{i}", ("A", "B", "C", "D"), 0, "A")
        for i in range(count)
    ]


@pytest.fixture
def clock():
    return FakeClock()


def test_session_key_combines_owner_and_time():
    assert make_session_key("42", 1700000000123) == "42:1700000000123"


def test_score_rounds_seconds_half_up():
    assert compute_score(3, 2500) == 2997
    assert compute_score(3, 2499) == 2998
    assert compute_score(0, 0) == 0


def test_completing_with_one_wrong_answer(clock):
    store = FakeScoreStore()
    manager = QuizSessionManager(score_store=store, clock=clock)
    manager.start("u1:1", questions(3), "u1", "たろう")

    manager.present_question("u1:1")
    clock.advance(1.2)
    first = manager.answer("u1:1", 0, "u1")
    assert first.correct and first.elapsed_ms == 1200
    assert first.next_question.id == "q1"

    manager.present_question("u1:1")
    clock.advance(2.3)
    second = manager.answer("u1:1", 3, "u1")
    assert not second.correct

    manager.present_question("u1:1")
    clock.advance(1.5)
    final = manager.answer("u1:1", 0, "u1")

    result = final.result
    assert final.completed
    assert result.correct_count == 2
    assert result.total_time_ms == 5000
    assert result.score == 2 * 1000 - 5
    assert result.stored is True
    assert store.calls == [("u1", "たろう", 1995, 5000)]
    assert "u1:1" not in manager
    with pytest.raises(SessionNotFound):
        manager.answer("u1:1", 0)


def test_quit_reports_partial_result_without_storing(clock):
    store = FakeScoreStore()
    manager = QuizSessionManager(score_store=store, clock=clock)
    manager.start("u1:1", questions(3), "u1")
    clock.advance(2)
    manager.answer("u1:1", 0)

    result = manager.quit("u1:1")
    assert result.score is None
    assert not result.completed
    assert result.answered == 1
    assert result.correct_count == 1
    assert store.calls == []
    with pytest.raises(SessionNotFound):
        manager.answer("u1:1", 0)
    with pytest.raises(SessionNotFound):
        manager.quit("u1:1")


def test_only_owner_may_answer(clock):
    manager = QuizSessionManager(clock=clock)
    manager.start("u1:1", questions(2), "u1")
    with pytest.raises(NotSessionOwner):
        manager.answer("u1:1", 0, "intruder")
    assert manager.get("u1:1").current_index == 0


def test_concurrent_sessions_for_same_user_do_not_collide(clock):
    manager = QuizSessionManager(clock=clock)
    manager.start(make_session_key("u1", 1), questions(2), "u1")
    manager.start(make_session_key("u1", 2), questions(2), "u1")
    manager.answer("u1:1", 0)
    assert manager.get("u1:1").current_index == 1
    assert manager.get("u1:2").current_index == 0
    assert len(manager) == 2


def test_end_sessions_for_keeps_named_session(clock):
    manager = QuizSessionManager(clock=clock)
    for key in ("u1:1", "u1:2", "u2:1"):
        manager.start(key, questions(1), key.split(":")[0])
    assert manager.end_sessions_for("u1", keep="u1:2") == 1
    assert "u1:1" not in manager and "u1:2" in manager and "u2:1" in manager


def test_expire_idle_drops_abandoned_sessions(clock):
    manager = QuizSessionManager(clock=clock)
    manager.start("old:1", questions(2), "old")
    clock.advance(600)
    manager.start("new:1", questions(2), "new")
    clock.advance(400)
    assert manager.expire_idle(900) == ["old:1"]
    assert "new:1" in manager


def test_registries_are_isolated(clock):
    first, second = QuizSessionManager(clock=clock), QuizSessionManager(clock=clock)
    first.start("u1:1", questions(1), "u1")
    assert len(second) == 0
    with pytest.raises(SessionNotFound):
        second.get("u1:1")


def test_start_requires_questions(clock):
    with pytest.raises(ValueError):
        QuizSessionManager(clock=clock).start("u1:1", [], "u1")
