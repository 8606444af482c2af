"""Tests for quiz construction."""
import dataclasses
import random

import pytest

from mountain_bot.config import get_settings
from mountain_bot.models import CHOICE_COUNT, MountainRecord, QuizCategory, TriviaItem
from mountain_bot.quiz import QuizBuildError, QuizBuilder
from mountain_bot.state import MountainStore

PREFECTURES = ["長野県", "山梨県", "静岡県", "富山県", "岐阜県", "北海道", "鹿児島県"]


def make_pool(count, same_region=False):
    return [
        MountainRecord.create(
            id=f"mountix-{i}",
            name=f"山{i}号",
            source_label="Mountix",
            elevation=1000 + i * 37,
            regions=["長野県"] if same_region else [PREFECTURES[i % len(PREFECTURES)]],
            description=f"説明 {i}",
        )
        for i in range(count)
    ]


class FakeAggregator:
    def __init__(self, pool):
        self.pool = pool
        self.requested = []

    async def fetch_pool(self, limit=200):
        self.requested.append(limit)
        return list(self.pool)


class FakeTrivia:
    def __init__(self, count=7, fail=False):
        self.count = count
        self.fail = fail

    async def generate_trivia(self, count):
        if self.fail:
            raise RuntimeError("LLM offline")
        return [
            TriviaItem(f"問題{i}", (f"正解{i}", f"誤答A{i}", f"誤答B{i}", f"誤答C{i}"), f"正解{i}")
            for i in range(min(count, self.count))
        ]


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def store(tmp_path):
    return MountainStore(tmp_path / "quiz.db")


def builder_for(store, pool, trivia=None, seed=7, clock=None, **overrides):
    settings = dataclasses.replace(get_settings(), **overrides) if overrides else get_settings()
    return QuizBuilder(
        FakeAggregator(pool),
        store,
        trivia,
        settings=settings,
        rng=random.Random(seed),
        clock=clock or FakeClock(),
    )


def assert_well_formed(questions):
    assert len(questions) == 10
    assert len({q.id for q in questions}) == 10
    for question in questions:
        assert len(question.choices) == CHOICE_COUNT
        assert len(set(question.choices)) == CHOICE_COUNT
        assert 0 <= question.correct_index < CHOICE_COUNT


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
async def test_quiz_has_ten_questions_without_trivia(store, seed):
    questions = await builder_for(store, make_pool(60), seed=seed).build_quiz()
    assert_well_formed(questions)
    assert all(q.category != QuizCategory.TRIVIA for q in questions)


@pytest.mark.asyncio
async def test_quiz_mixes_three_mountain_and_seven_trivia(store):
    questions = await builder_for(store, make_pool(60), FakeTrivia()).build_quiz()
    assert_well_formed(questions)
    categories = [q.category for q in questions]
    assert categories.count(QuizCategory.TRIVIA) == 7
    assert {c for c in categories if c != QuizCategory.TRIVIA} == {
        QuizCategory.ELEVATION,
        QuizCategory.NAME,
        QuizCategory.REGION,
    }


@pytest.mark.asyncio
async def test_short_trivia_batch_is_topped_up_with_mountain_questions(store):
    questions = await builder_for(store, make_pool(60), FakeTrivia(count=2)).build_quiz()
    assert_well_formed(questions)
    assert sum(q.category == QuizCategory.TRIVIA for q in questions) == 2


@pytest.mark.asyncio
async def test_trivia_failure_does_not_block_quiz(store):
    questions = await builder_for(store, make_pool(60), FakeTrivia(fail=True)).build_quiz()
    assert_well_formed(questions)


@pytest.mark.asyncio
async def test_fallback_fills_when_region_questions_are_impossible(store):
    questions = await builder_for(store, make_pool(12, same_region=True)).build_quiz()
    assert_well_formed(questions)
    assert all(q.category != QuizCategory.REGION for q in questions)


@pytest.mark.asyncio
@pytest.mark.parametrize("count", [1, 3])
async def test_tiny_pool_is_filled_with_elevation_questions(store, count):
    questions = await builder_for(store, make_pool(count)).build_quiz()
    assert_well_formed(questions)
    assert {q.category for q in questions} == {QuizCategory.ELEVATION}


@pytest.mark.asyncio
async def test_empty_pool_raises(store):
    with pytest.raises(QuizBuildError):
        await builder_for(store, []).build_quiz()


@pytest.mark.asyncio
async def test_low_lying_pool_builds_quiz(store):
    pool = [
        MountainRecord.create(id=f"mountix-{i}", name=f"窪地{i}", source_label="Mountix", elevation=-200 - i, regions=["北海道"])
        for i in range(5)
    ]
    questions = await builder_for(store, pool).build_quiz()
    assert_well_formed(questions)


def test_pool_selection_filters_and_sorts(store):
    pool = make_pool(5) + [
        MountainRecord.create(id="mountix-x", name="無標高", source_label="Mountix", regions=["長野県"]),
        MountainRecord.create(id="mountix-y", name="無地域", source_label="Mountix", elevation=5000),
    ]
    selected = builder_for(store, pool, quiz_top_n=3).select_pool(pool)
    assert [r.id for r in selected] == ["mountix-4", "mountix-3", "mountix-2"]


def test_elevation_choices_are_sorted_distinct_and_non_negative(store):
    builder = builder_for(store, [])
    low = MountainRecord.create(id="m", name="低山", source_label="Mountix", elevation=20, regions=["東京都"])
    for index in range(20):
        question = builder._elevation_question(low, [low], index)
        values = [int(c) for c in question.choices]
        assert values == sorted(values)
        assert len(set(values)) == CHOICE_COUNT
        assert min(values) >= 0
        assert all(abs(v - 20) <= 100 for v in values)
        assert question.correct_choice == "20"


@pytest.mark.parametrize("elevation", [-500, -150, -100, -99, 0, 3])
@pytest.mark.parametrize("spread", [100, 4])
def test_elevation_choices_near_and_below_sea_level(store, elevation, spread):
    builder = builder_for(store, [], quiz_elevation_spread=spread)
    item = MountainRecord.create(id="m", name="低地", source_label="Mountix", elevation=elevation, regions=["北海道"])
    for index in range(10):
        question = builder._elevation_question(item, [item], index)
        values = [int(c) for c in question.choices]
        assert len(set(values)) == CHOICE_COUNT
        assert values == sorted(values)
        assert question.correct_choice == str(elevation)


def test_description_and_photo_questions_need_their_field(store):
    pool = make_pool(6)
    builder = builder_for(store, pool)
    assert builder._description_question(pool[0], pool, 0).category == QuizCategory.DESCRIPTION
    assert builder._photo_question(pool[0], pool, 0) is None


@pytest.mark.asyncio
async def test_latest_quiz_is_saved_and_reloaded(store):
    clock = FakeClock(1000.0)
    builder = builder_for(store, make_pool(60), clock=clock)
    await builder.build_quiz()
    clock.now = 2000.0
    second = await builder.build_quiz()
    assert builder.load_latest_quiz() == second
