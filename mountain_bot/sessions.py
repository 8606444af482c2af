"""In-memory quiz sessions: presenting questions, timing answers and scoring."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .models import QuizQuestion, QuizSession

logger = logging.getLogger(__name__)

POINTS_PER_CORRECT = 1000


class SessionNotFound(LookupError):
    """The session key is unknown, finished, quit or expired."""

    def __init__(self, session_key: str) -> None:
        super().__init__(f"quiz session {session_key!r} not found")
        self.session_key = session_key


class NotSessionOwner(PermissionError):
    """Someone other than the owner tried to answer."""

    def __init__(self, session_key: str, user_id: str) -> None:
        super().__init__(f"user {user_id} does not own quiz session {session_key!r}")
        self.session_key = session_key
        self.user_id = user_id


def make_session_key(owner_id: str, now_ms: int) -> str:
    return f"{owner_id}:{int(now_ms)}"


def compute_score(correct_count: int, total_time_ms: int) -> int:
    """``correct * 1000`` minus the total time in seconds, rounded half up."""

    penalty = (max(0, int(total_time_ms)) + 500) // 1000
    return correct_count * POINTS_PER_CORRECT - penalty


@dataclass(frozen=True)
class QuizResult:
    session_key: str
    owner_id: str
    display_name: str
    correct_count: int
    answered: int
    total_questions: int
    total_time_ms: int
    score: Optional[int] = None
    stored: bool = False

    @property
    def completed(self) -> bool:
        return self.score is not None


@dataclass(frozen=True)
class AnswerOutcome:
    correct: bool
    question: QuizQuestion
    elapsed_ms: int
    next_question: Optional[QuizQuestion] = None
    result: Optional[QuizResult] = None

    @property
    def completed(self) -> bool:
        return self.result is not None


class QuizSessionManager:
    """Owns the registry of live sessions.

    ``score_store`` needs ``record_best_score(user_id, display_name, score,
    total_time_ms) -> bool``; without one, completed scores are not kept.
    """

    def __init__(self, score_store=None, clock: Callable[[], float] = time.monotonic) -> None:
        self._sessions: Dict[str, QuizSession] = {}
        self._score_store = score_store
        self._clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_key: str) -> bool:
        return session_key in self._sessions

    def get(self, session_key: str) -> QuizSession:
        try:
            return self._sessions[session_key]
        except KeyError:
            raise SessionNotFound(session_key) from None

    def start(
        self,
        session_key: str,
        questions: Sequence[QuizQuestion],
        owner_id: str,
        display_name: Optional[str] = None,
    ) -> QuizSession:
        if not questions:
            raise ValueError("a quiz session needs at least one question")
        now = self._clock()
        session = QuizSession(
            session_key=session_key,
            questions=list(questions),
            owner_id=str(owner_id),
            display_name=display_name or str(owner_id),
            question_started_at=now,
            last_activity=now,
        )
        self._sessions[session_key] = session
        logger.info("Started quiz session %s with %d questions", session_key, len(session.questions))
        return session

    def present_question(self, session_key: str) -> QuizQuestion:
        session = self.get(session_key)
        now = self._clock()
        session.question_started_at = now
        session.last_activity = now
        return session.current_question

    def answer(self, session_key: str, choice_index: int, user_id: Optional[str] = None) -> AnswerOutcome:
        session = self.get(session_key)
        if user_id is not None and str(user_id) != session.owner_id:
            raise NotSessionOwner(session_key, str(user_id))

        now = self._clock()
        question = session.current_question
        started = session.question_started_at if session.question_started_at is not None else now
        elapsed_ms = max(0, int(round((now - started) * 1000)))
        correct = choice_index == question.correct_index

        session.response_times.append(elapsed_ms)
        if correct:
            session.correct_count += 1
        session.current_index += 1
        session.last_activity = now

        if not session.is_complete:
            session.question_started_at = now
            return AnswerOutcome(correct, question, elapsed_ms, next_question=session.current_question)

        del self._sessions[session_key]
        return AnswerOutcome(correct, question, elapsed_ms, result=self._finish(session))

    def _finish(self, session: QuizSession) -> QuizResult:
        total_ms = session.total_time_ms
        score = compute_score(session.correct_count, total_ms)
        stored = False
        if self._score_store is not None:
            stored = self._score_store.record_best_score(
                session.owner_id, session.display_name, score, total_ms
            )
        logger.info(
            "Quiz %s finished: %d/%d correct, %d ms, score %d (stored=%s)",
            session.session_key,
            session.correct_count,
            len(session.questions),
            total_ms,
            score,
            stored,
        )
        return QuizResult(
            session_key=session.session_key,
            owner_id=session.owner_id,
            display_name=session.display_name,
            correct_count=session.correct_count,
            answered=session.current_index,
            total_questions=len(session.questions),
            total_time_ms=total_ms,
            score=score,
            stored=stored,
        )

    def quit(self, session_key: str) -> QuizResult:
        """End early; the partial result is reported but never stored."""

        session = self.get(session_key)
        del self._sessions[session_key]
        logger.info("Quiz session %s quit after %d answers", session_key, session.current_index)
        return QuizResult(
            session_key=session.session_key,
            owner_id=session.owner_id,
            display_name=session.display_name,
            correct_count=session.correct_count,
            answered=session.current_index,
            total_questions=len(session.questions),
            total_time_ms=session.total_time_ms,
        )

    def expire_idle(self, max_idle_seconds: float) -> List[str]:
        now = self._clock()
        expired = [
            key
            for key, session in self._sessions.items()
            if session.last_activity is not None and now - session.last_activity > max_idle_seconds
        ]
        for key in expired:
            del self._sessions[key]
        if expired:
            logger.info("Expired %d idle quiz sessions", len(expired))
        return expired

    def end_sessions_for(self, owner_id: str, keep: Optional[str] = None) -> int:
        """Drop every session of ``owner_id`` except ``keep``."""

        doomed = [
            key
            for key, session in self._sessions.items()
            if session.owner_id == str(owner_id) and key != keep
        ]
        for key in doomed:
            del self._sessions[key]
        return len(doomed)


__all__ = [
    "AnswerOutcome",
    "NotSessionOwner",
    "QuizResult",
    "QuizSessionManager",
    "SessionNotFound",
    "compute_score",
    "make_session_key",
]
