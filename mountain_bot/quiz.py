"""Builds ten-question quizzes from mountain facts and generated trivia."""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Callable, Dict, List, Optional, Sequence

from .config import Settings, get_settings
from .models import (
    CHOICE_COUNT,
    MountainRecord,
    QuizCategory,
    QuizQuestion,
    TriviaItem,
    ValidationFailure,
)
from .state import MountainStore

logger = logging.getLogger(__name__)

_DECOY_COUNT = CHOICE_COUNT - 1
_DESCRIPTION_PREVIEW = 40
_ELEVATION_DRAWS = 50


class QuizBuildError(RuntimeError):
    """Raised when the mountain pool cannot supply a usable quiz."""


def _distinct(values: Sequence[str], exclude: str) -> List[str]:
    seen = {exclude}
    out: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            out.append(value)
    return out


class QuizBuilder:
    """Assembles quizzes; randomness and time are injected for tests.

    ``trivia`` is any object with an async ``generate_trivia(count)``
    returning :class:`TriviaItem` objects; it may be ``None``.
    """

    def __init__(
        self,
        aggregator,
        store: MountainStore,
        trivia=None,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.aggregator = aggregator
        self.store = store
        self.trivia = trivia
        self.settings = settings or get_settings()
        self.rng = rng or random.Random()
        self.clock = clock
        self._builders: Dict[str, Callable[[MountainRecord, List[MountainRecord], int], Optional[QuizQuestion]]] = {
            "elevation": self._elevation_question,
            "name": self._name_question,
            "region": self._region_question,
            "description": self._description_question,
            "photo": self._photo_question,
        }

    # Pool --------------------------------------------------------------
    def select_pool(self, records: Sequence[MountainRecord]) -> List[MountainRecord]:
        """Mountains with elevation and a region, highest first, top N."""

        usable = [r for r in records if r.elevation is not None and r.regions]
        usable.sort(key=lambda r: r.elevation, reverse=True)
        return usable[: self.settings.quiz_top_n]

    # Entry points ------------------------------------------------------
    async def build_quiz(self) -> List[QuizQuestion]:
        total = self.settings.quiz_total_questions
        raw_pool, trivia_items = await asyncio.gather(
            self.aggregator.fetch_pool(self.settings.quiz_pool_size),
            self._fetch_trivia(self.settings.quiz_trivia_questions),
        )
        pool = self.select_pool(raw_pool)
        if not pool:
            raise QuizBuildError("no mountains with elevation and region to build questions from")

        trivia_questions = [self._trivia_question(item, i) for i, item in enumerate(trivia_items)]
        mountain_target = max(self.settings.quiz_mountain_questions, total - len(trivia_questions))
        mountain_questions = self.build_mountain_questions(pool, mountain_target)

        questions = mountain_questions + trivia_questions
        self.rng.shuffle(questions)
        questions = questions[:total]

        created_at_ms = int(self.clock() * 1000)
        self.store.save_quiz_set(created_at_ms, questions, keep=self.settings.quiz_keep_sets)
        logger.info(
            "Built quiz %s: %d mountain, %d trivia questions",
            created_at_ms,
            len(mountain_questions),
            len(trivia_questions),
        )
        return questions

    def load_latest_quiz(self) -> Optional[List[QuizQuestion]]:
        return self.store.latest_quiz_set()

    async def _fetch_trivia(self, count: int) -> List[TriviaItem]:
        if self.trivia is None or count <= 0:
            return []
        try:
            items = await self.trivia.generate_trivia(count)
        except Exception:
            logger.exception("Trivia provider failed; building quiz from mountains only")
            return []
        return [item for item in items if item.answer in item.options][:count]

    # Mountain questions ------------------------------------------------
    def build_mountain_questions(self, pool: List[MountainRecord], target: int) -> List[QuizQuestion]:
        """Rotate categories with random picks, then fill deterministically."""

        categories = [c for c in self.settings.quiz_categories if c in self._builders] or ["elevation", "name", "region"]
        questions: List[QuizQuestion] = []
        attempts = 0
        while len(questions) < target and attempts < self.settings.quiz_max_attempts:
            attempts += 1
            category = categories[len(questions) % len(categories)]
            item = self.rng.choice(pool)
            try:
                question = self._builders[category](item, pool, len(questions))
            except ValidationFailure as exc:
                logger.debug("Discarding %s question for %s: %s", category, item.id, exc)
                continue
            if question is not None:
                questions.append(question)

        if len(questions) < target:
            used = {q.mountain_id for q in questions}
            for item in pool:
                if len(questions) >= target:
                    break
                if item.id in used:
                    continue
                question = self._name_question(item, pool, len(questions))
                if question is not None:
                    used.add(item.id)
                    questions.append(question)

        index = 0
        while len(questions) < target:
            item = pool[index % len(pool)]
            questions.append(self._elevation_question(item, pool, len(questions)))
            index += 1
        return questions

    def _question_id(self, category: QuizCategory, item: MountainRecord, index: int) -> str:
        return f"{category.value}-{item.id}-{index}"

    def _with_decoys(self, correct: str, decoys: List[str]) -> Optional[List[str]]:
        if len(decoys) < _DECOY_COUNT:
            return None
        choices = [correct, *self.rng.sample(decoys, _DECOY_COUNT)]
        self.rng.shuffle(choices)
        return choices

    def _name_decoys(self, item: MountainRecord, pool: List[MountainRecord]) -> List[str]:
        return _distinct([m.name for m in pool if m.id != item.id], item.name)

    def _elevation_question(self, item: MountainRecord, pool: List[MountainRecord], index: int) -> Optional[QuizQuestion]:
        if item.elevation is None:
            return None
        spread = max(self.settings.quiz_elevation_spread, CHOICE_COUNT)
        values = {item.elevation}
        for _ in range(_ELEVATION_DRAWS):
            if len(values) >= CHOICE_COUNT:
                break
            values.add(max(0, item.elevation + self.rng.randint(-spread, spread)))
        # Near or below sea level the 0 floor collapses draws; step upward instead.
        step = max(1, spread // CHOICE_COUNT)
        candidate = item.elevation
        while len(values) < CHOICE_COUNT:
            candidate += step
            values.add(candidate)
        ordered = sorted(values)
        correct = str(item.elevation)
        return QuizQuestion(
            id=self._question_id(QuizCategory.ELEVATION, item, index),
            category=QuizCategory.ELEVATION,
            prompt=f"{item.name} の標高はどれ？ (m)",
            choices=tuple(str(v) for v in ordered),
            correct_index=ordered.index(item.elevation),
            answer_text=correct,
            mountain_id=item.id,
        )

    def _name_question(self, item: MountainRecord, pool: List[MountainRecord], index: int) -> Optional[QuizQuestion]:
        choices = self._with_decoys(item.name, self._name_decoys(item, pool))
        if choices is None:
            return None
        region = f" ({item.primary_region})" if item.primary_region else ""
        return QuizQuestion(
            id=self._question_id(QuizCategory.NAME, item, index),
            category=QuizCategory.NAME,
            prompt=f"標高 {item.elevation} m{region} の山はどれ？",
            choices=tuple(choices),
            correct_index=choices.index(item.name),
            answer_text=item.name,
            mountain_id=item.id,
        )

    def _region_question(self, item: MountainRecord, pool: List[MountainRecord], index: int) -> Optional[QuizQuestion]:
        correct = item.primary_region
        if not correct:
            return None
        decoys = _distinct([m.primary_region for m in pool if m.id != item.id and m.primary_region], correct)
        choices = self._with_decoys(correct, decoys)
        if choices is None:
            return None
        return QuizQuestion(
            id=self._question_id(QuizCategory.REGION, item, index),
            category=QuizCategory.REGION,
            prompt=f"{item.name} がある都道府県はどれ？",
            choices=tuple(choices),
            correct_index=choices.index(correct),
            answer_text=correct,
            mountain_id=item.id,
        )

    def _description_question(self, item: MountainRecord, pool: List[MountainRecord], index: int) -> Optional[QuizQuestion]:
        if not item.description:
            return None
        choices = self._with_decoys(item.name, self._name_decoys(item, pool))
        if choices is None:
            return None
        preview = " ".join(item.description.split())[:_DESCRIPTION_PREVIEW]
        return QuizQuestion(
            id=self._question_id(QuizCategory.DESCRIPTION, item, index),
            category=QuizCategory.DESCRIPTION,
            prompt=f"説明: 「{preview}...」 この山の名前は？",
            choices=tuple(choices),
            correct_index=choices.index(item.name),
            answer_text=item.name,
            mountain_id=item.id,
        )

    def _photo_question(self, item: MountainRecord, pool: List[MountainRecord], index: int) -> Optional[QuizQuestion]:
        if not item.photo_url:
            return None
        choices = self._with_decoys(item.name, self._name_decoys(item, pool))
        if choices is None:
            return None
        return QuizQuestion(
            id=self._question_id(QuizCategory.PHOTO, item, index),
            category=QuizCategory.PHOTO,
            prompt=f"この写真の山は？\n{item.photo_url}",
            choices=tuple(choices),
            correct_index=choices.index(item.name),
            answer_text=item.name,
            mountain_id=item.id,
        )

    def _trivia_question(self, item: TriviaItem, index: int) -> QuizQuestion:
        return QuizQuestion(
            id=f"trivia-{index}",
            category=QuizCategory.TRIVIA,
            prompt=item.question,
            choices=item.options,
            correct_index=item.options.index(item.answer),
            answer_text=item.answer,
        )


__all__ = ["QuizBuildError", "QuizBuilder"]
