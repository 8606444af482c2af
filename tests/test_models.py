"""Tests for record validation and quiz value objects."""
import pytest

from mountain_bot.models import (
    QuizCategory,
    QuizQuestion,
    MountainRecord,
    SearchQuery,
    TriviaItem,
    UserMountain,
    ValidationFailure,
    clean_coordinates,
    clean_elevation,
)


def _record(**kwargs):
    fields = {"id": "mountix-1", "name": "富士山", "source_label": "Mountix"}
    fields.update(kwargs)
    return MountainRecord.create(**fields)


def test_out_of_range_elevation_is_discarded():
    assert _record(elevation=15000).elevation is None
    assert _record(elevation=3776).elevation == 3776


def test_elevation_is_floored():
    assert clean_elevation("3776.9") == 3776
    assert clean_elevation(-501) is None
    assert clean_elevation("abc") is None


def test_coordinates_outside_japan_are_discarded():
    assert _record(latitude=10, longitude=10).coordinates is None
    assert _record(latitude=35.3606, longitude=138.7274).coordinates == (35.3606, 138.7274)


def test_coordinates_are_rounded_to_six_places():
    assert clean_coordinates("35.36061234", "138.72741299") == (35.360612, 138.727413)
    assert clean_coordinates(None, 138.7) is None


def test_missing_name_raises():
    with pytest.raises(ValidationFailure):
        _record(name="  ")


def test_names_are_nfkc_normalised():
    record = _record(name=" ﾌｼﾞ ", name_reading="ﾌｼﾞｻﾝ")
    assert record.name == "フジ"
    assert record.name_reading == "フジサン"


def test_search_query_emptiness():
    assert SearchQuery().is_empty
    assert SearchQuery(name="  ").is_empty
    assert not SearchQuery(id="mountix-1").is_empty


def test_quiz_question_requires_four_distinct_choices():
    with pytest.raises(ValidationFailure):
        QuizQuestion("q", QuizCategory.NAME, "?", ("a", "a", "b", "c"), 0)
    with pytest.raises(ValidationFailure):
        QuizQuestion("q", QuizCategory.NAME, "?", ("a", "b", "c"), 0)
    with pytest.raises(ValidationFailure):
        QuizQuestion("q", QuizCategory.NAME, "?", ("a", "b", "c", "d"), 4)


def test_quiz_question_dict_round_trip():
    question = QuizQuestion("q1", QuizCategory.REGION, "どこ？", ("長野県", "山梨県", "静岡県", "富山県"), 2, "静岡県", "mountix-1")
    restored = QuizQuestion.from_dict(question.to_dict())
    assert restored == question
    assert restored.correct_choice == "静岡県"


def test_trivia_answer_must_be_an_option():
    with pytest.raises(ValidationFailure):
        TriviaItem.from_payload({"question": "Q", "options": ["a", "b", "c", "d"], "answer": "e"})
    with pytest.raises(ValidationFailure):
        TriviaItem.from_payload({"question": "Q", "options": ["a", "b", "c"], "answer": "a"})
    item = TriviaItem.from_payload({"question": "Q", "options": ["a", "b", "c", "d"], "answer": " b "})
    assert item.answer == "b"


def test_user_mountain_to_record():
    submission = UserMountain(id=7, name="富士", added_by="42", name_reading="フジ", elevation=3776, location="35.36,138.73")
    record = submission.to_record()
    assert record.id == "user-7"
    assert record.source_label == "Local"
    assert record.coordinates == (35.36, 138.73)
    assert UserMountain(id=8, name="x", added_by="1", location="山梨県").coordinates() is None
