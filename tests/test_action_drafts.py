import json
import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from action_drafts import (
    CreateGymDraft,
    CreateWorkoutDraft,
    DraftKind,
    parse_action_draft_message,
    validate_action_draft,
)
from db import ExerciseRepository, WorkoutSpaceRepository
from draft_executor import DraftExecutor
from errors import DraftRejectedError, StaleReferenceError
from queries import get_template_with_details, get_workout_with_details
from schema import open_store


def workout_draft(exercises, **payload):
    return {
        "kind": "create_workout",
        "confidence": 0.8,
        "risk": "low",
        "title": "Push day",
        "summary": "Chest and shoulders",
        "payload": {"name": "Push Day", "exercises": exercises, **payload},
    }


def template_draft(exercises, name="Upper A"):
    return {
        "kind": "create_template",
        "confidence": 0.7,
        "risk": "low",
        "title": name,
        "summary": "Upper body template",
        "payload": {"name": name, "exercises": exercises},
    }


def gym_draft(name, equipment_ids=(), is_default=False):
    return {
        "kind": "create_gym",
        "confidence": 0.9,
        "risk": "low",
        "title": "New gym",
        "summary": "Garage setup",
        "payload": {"name": name, "equipmentIds": list(equipment_ids), "isDefault": is_default},
    }


async def library(store) -> dict:
    return {row["name"]: row["id"] for row in await store.table("exercises").to_list()}


async def row_counts(store) -> dict:
    names = ["workout_sessions", "workout_items", "workout_sets", "templates", "template_items", "workout_spaces"]
    return {name: await store.table(name).count() for name in names}


def test_parse_fenced_contract():
    contract = {
        "contractVersion": "coach_action_v1",
        "assistantText": "Here is a push day.",
        "actionDraft": workout_draft([{"exerciseId": 1}]),
    }
    text = "Sure!\n```json\n" + json.dumps(contract) + "\n```"
    parsed = parse_action_draft_message(text)
    assert parsed.parse_errors == []
    assert parsed.assistant_text == "Here is a push day."
    assert isinstance(parsed.action_draft, CreateWorkoutDraft)
    assert parsed.action_draft.payload.exercises[0].exercise_id == 1


def test_parse_bare_object_and_failures():
    contract = {
        "contractVersion": "coach_action_v1",
        "assistantText": "Gym ready.",
        "actionDraft": gym_draft("Garage"),
    }
    parsed = parse_action_draft_message(json.dumps(contract))
    assert isinstance(parsed.action_draft, CreateGymDraft)

    broken = parse_action_draft_message("Try this\n```json\n{not json}\n```")
    assert broken.action_draft is None
    assert broken.parse_errors == ["Unable to parse action draft JSON."]
    assert broken.assistant_text == "Try this"

    wrong = parse_action_draft_message(json.dumps({"contractVersion": "v0", "assistantText": "x"}))
    assert wrong.action_draft is None
    assert wrong.parse_errors[0].startswith("Invalid action draft contract:")

    plain = parse_action_draft_message("Just chatting.")
    assert plain.assistant_text == "Just chatting."
    assert plain.parse_errors == []


@pytest.mark.asyncio
async def test_invalid_shape_is_reported_not_raised(tmp_path):
    store = await open_store(str(tmp_path / "shape.db"))
    try:
        draft = workout_draft([{"exerciseId": 1}])
        draft["confidence"] = 2
        result = await validate_action_draft(store, draft)
        assert not result.valid
        assert result.normalized_draft is None
        assert all(issue.kind == "validation" for issue in result.errors)
        assert any("confidence" in message for message in result.error_messages)

        result = await validate_action_draft(store, {"kind": "delete_everything"})
        assert not result.valid

        result = await validate_action_draft(store, workout_draft([{"exerciseId": 1, "sets": -1}]))
        assert not result.valid
        for message in result.error_messages:
            assert message.startswith("create_workout.payload.exercises.0.sets: ")
            assert "[" not in message and "constrained" not in message
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_tool_call_json_text_is_accepted(tmp_path):
    store = await open_store(str(tmp_path / "text.db"))
    try:
        ids = await library(store)
        result = await validate_action_draft(store, json.dumps(workout_draft([{"exerciseId": ids["Plank"]}])))
        assert result.valid, result.error_messages
        assert result.normalized_draft.exercises[0].exercise_id == ids["Plank"]

        result = await validate_action_draft(store, '{"kind": "create_workout"')
        assert not result.valid
        assert result.error_messages == ["Unable to parse action draft JSON."]
        assert result.errors[0].kind == "validation"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_non_numeric_set_values_are_left_blank(tmp_path):
    store = await open_store(str(tmp_path / "ranges.db"))
    try:
        ids = await library(store)
        draft = workout_draft(
            [{"exerciseId": ids["Bench Press"], "sets": [{"reps": "8-12", "weight": 60}, {"reps": 10, "weight": "heavy"}]}]
        )
        result = await validate_action_draft(store, draft)
        assert result.valid, result.error_messages
        sets = result.normalized_draft.exercises[0].sets
        assert [(s.reps, s.weight) for s in sets] == [("", "60"), ("10", "")]
        assert result.normalized_draft.exercises[0].target_reps == 10
        assert any('"8-12"' in w.message and '"heavy"' in w.message for w in result.warnings)

        done = await DraftExecutor(store).execute(result)
        detail = await get_workout_with_details(store, done.id)
        assert [s["reps"] for s in detail["items"][0]["sets"]] == ["", "10"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_non_positive_ids_are_reported_with_unknown_ids(tmp_path):
    store = await open_store(str(tmp_path / "zero.db"))
    try:
        result = await validate_action_draft(store, workout_draft([{"exerciseId": 0}, {"exerciseId": 9999}]))
        assert not result.valid
        assert result.error_messages == ["Unknown exercise IDs: 0, 9999."]
        assert [e.kind for e in result.errors] == ["referential"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_workout_draft_commits_dense_order(tmp_path):
    store = await open_store(str(tmp_path / "workout.db"))
    try:
        ids = await library(store)
        draft = workout_draft(
            [
                {"exerciseId": ids["Bench Press"], "sets": [{"reps": 8, "weight": 60}, {"reps": 8, "weight": 62.5}]},
                {"name": "OHP", "sets": 2},
                {"name": "dips", "notes": "slow negatives"},
            ]
        )
        result = await validate_action_draft(store, draft)
        assert result.valid, result.error_messages
        normalized = result.normalized_draft
        assert normalized.kind is DraftKind.CREATE_WORKOUT
        assert [e.exercise_id for e in normalized.exercises] == [
            ids["Bench Press"],
            ids["Overhead Press"],
            ids["Dips"],
        ]

        done = await DraftExecutor(store).execute(result)
        assert done.kind == "create_workout"
        assert done.name == "Push Day"

        detail = await get_workout_with_details(store, done.id)
        assert detail["workout"]["session_note"] == "Push Day"
        assert detail["workout"]["finished_at"] is None
        items = detail["items"]
        assert [item["sort_order"] for item in items] == [0, 1, 2]
        for item in items:
            numbers = [s["set_number"] for s in item["sets"]]
            assert numbers == list(range(1, len(numbers) + 1))
            assert item["rest_seconds"] == 90
        assert [s["weight"] for s in items[0]["sets"]] == ["60", "62.5"]
        assert [s["reps"] for s in items[0]["sets"]] == ["8", "8"]
        assert len(items[1]["sets"]) == 2
        assert items[2]["notes"] == "slow negatives"
        assert items[2]["target_sets"] == len(items[2]["sets"])
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_unknown_exercise_id_blocks_and_writes_nothing(tmp_path):
    store = await open_store(str(tmp_path / "unknown.db"))
    try:
        ids = await library(store)
        before = await row_counts(store)
        draft = workout_draft([{"exerciseId": ids["Plank"]}, {"exerciseId": 9999}, {"exerciseId": 9999}])
        result = await validate_action_draft(store, draft)
        assert not result.valid
        assert "Unknown exercise IDs: 9999." in result.error_messages
        assert [e.kind for e in result.errors] == ["referential"]

        with pytest.raises(DraftRejectedError):
            await DraftExecutor(store).execute(result)
        with pytest.raises(DraftRejectedError):
            await DraftExecutor(store).execute(None)
        assert await row_counts(store) == before
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_unmatched_names_need_review(tmp_path):
    store = await open_store(str(tmp_path / "review.db"))
    try:
        draft = workout_draft(
            [{"name": "Back Squat"}, {"name": "Zercher Flux Hold"}],
            needsReview=[{"requestedName": "Sled Push", "suggestions": []}],
        )
        result = await validate_action_draft(store, draft)
        assert not result.valid
        assert any(m.startswith("Could not match exercises: Zercher Flux Hold.") for m in result.error_messages)
        assert [r.requested_name for r in result.needs_review] == ["Zercher Flux Hold", "Sled Push"]
        assert any("Sled Push" in w.message for w in result.warnings)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_missing_gym_and_empty_draft(tmp_path):
    store = await open_store(str(tmp_path / "gym.db"))
    try:
        ids = await library(store)
        result = await validate_action_draft(store, workout_draft([{"exerciseId": ids["Plank"]}], gymId=404))
        assert "Selected gym does not exist." in result.error_messages

        result = await validate_action_draft(
            store, workout_draft([], needsReview=[{"requestedName": "Mystery"}])
        )
        assert "Include at least one exercise in the draft." in result.error_messages

        default = (await store.table("workout_spaces").to_list())[0]
        result = await validate_action_draft(
            store, workout_draft([{"exerciseId": ids["Plank"]}]), default_gym_id=default["id"]
        )
        assert result.valid
        assert result.normalized_draft.gym_id == default["id"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_gym_names_are_disambiguated(tmp_path):
    store = await open_store(str(tmp_path / "names.db"))
    try:
        executor = DraftExecutor(store)
        result = await validate_action_draft(store, gym_draft("Default Gym", ["barbell", "laser"]))
        assert result.valid
        assert {w.kind for w in result.warnings} == {"collision", "validation"}
        assert 'Will create "Default Gym (2)".' in result.warnings[0].message
        assert result.normalized_draft.equipment_ids == ["bodyweight", "barbell"]

        first = await executor.execute(result)
        assert first.name == "Default Gym (2)"
        second = await executor.execute(await validate_action_draft(store, gym_draft("default gym")))
        assert second.name == "default gym (3)"

        space = await WorkoutSpaceRepository(store).get(first.id)
        assert space["equipment_ids"] == ["bodyweight", "barbell"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_executing_one_validation_twice_continues_suffixes(tmp_path):
    store = await open_store(str(tmp_path / "twice.db"))
    try:
        executor = DraftExecutor(store)
        gym = await validate_action_draft(store, gym_draft("Default Gym"))
        assert gym.normalized_draft.name == "Default Gym (2)"
        assert gym.normalized_draft.requested_name == "Default Gym"
        first = await executor.execute(gym)
        second = await executor.execute(gym)
        assert (first.name, second.name) == ("Default Gym (2)", "Default Gym (3)")

        ids = await library(store)
        template = await validate_action_draft(store, template_draft([{"exerciseId": ids["Plank"]}], name="Core"))
        names = [(await executor.execute(template)).name for _ in range(3)]
        assert names == ["Core", "Core (2)", "Core (3)"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_single_default_space(tmp_path):
    store = await open_store(str(tmp_path / "default.db"))
    try:
        executor = DraftExecutor(store)
        for name in ("Garage", "Hotel"):
            result = await validate_action_draft(store, gym_draft(name, is_default=True))
            await executor.execute(result)
        spaces = await store.table("workout_spaces").to_list()
        defaults = [s["name"] for s in spaces if s["is_default"]]
        assert defaults == ["Hotel"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_template_rules(tmp_path):
    store = await open_store(str(tmp_path / "template.db"))
    try:
        ids = await library(store)
        result = await validate_action_draft(
            store, template_draft([{"exerciseId": ids["Pull Up"]}, {"name": "pull-ups"}])
        )
        assert not result.valid
        assert "Templates cannot repeat an exercise: Pull Up." in result.error_messages

        executor = DraftExecutor(store)
        draft = template_draft([{"exerciseId": ids["Pull Up"]}, {"exerciseId": ids["Barbell Row"], "sets": 4}])
        first = await executor.execute(await validate_action_draft(store, draft))
        again = await validate_action_draft(store, draft)
        assert again.valid
        assert [w.kind for w in again.warnings] == ["collision"]
        second = await executor.execute(again)
        assert (first.name, second.name) == ("Upper A", "Upper A (2)")

        detail = await get_template_with_details(store, second.id)
        assert [i["sort_order"] for i in detail["items"]] == [0, 1]
        assert detail["items"][1]["target_sets"] == 4
        assert detail["items"][1]["exercise"]["name"] == "Barbell Row"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_stale_reference_is_retryable(tmp_path):
    store = await open_store(str(tmp_path / "stale.db"))
    try:
        custom_id = await ExerciseRepository(store).create_custom("Landmine Press")
        result = await validate_action_draft(store, workout_draft([{"exerciseId": custom_id}]))
        assert result.valid
        await ExerciseRepository(store).delete(custom_id)

        before = await row_counts(store)
        with pytest.raises(StaleReferenceError) as info:
            await DraftExecutor(store).execute(result)
        assert info.value.retryable
        assert info.value.missing == {"exercises": [custom_id]}
        assert await row_counts(store) == before
    finally:
        await store.close()
