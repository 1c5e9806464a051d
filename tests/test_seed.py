import hashlib
import json
import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from schema import open_store
from seed import (
    DATASET_SOURCE,
    SEED_VERSION_KEY,
    compute_stable_id,
    merge_exercise,
    normalize_dataset_record,
    seed_exercises,
    slugify,
    unique_slug,
)

RECORDS = [
    {
        "id": "Barbell_Bench_Press",
        "name": "Barbell Bench Press",
        "equipment": "barbell",
        "primaryMuscles": ["chest"],
        "secondaryMuscles": ["triceps", "shoulders"],
        "category": "strength",
        "force": "push",
        "instructions": ["Lie on the bench.", "Press the bar."],
    },
    {
        "id": "Dead_Bug",
        "name": "Dead Bug",
        "equipment": "body only",
        "primaryMuscles": ["abdominals"],
        "category": "strength",
    },
]


def test_slugs():
    assert slugify("  Push-Up (Wide) ") == "push-up-wide"
    assert slugify(None) == ""
    assert unique_slug("row", ["row", "row-2"]) == "row-3"
    assert unique_slug("", []) == "exercise"


def test_stable_id_prefers_source_id():
    assert compute_stable_id("Squat", source=DATASET_SOURCE, source_id="Squat_1") == (
        "free-exercise-db:Squat_1"
    )
    assert compute_stable_id("Squat", source_id="Squat_1") == "Squat_1"


def test_stable_id_content_hash():
    material = json.dumps(
        {
            "name": "goblet squat",
            "equipment": ["dumbbell"],
            "primaryMuscles": ["glutes", "quads"],
            "pattern": "squat",
            "category": "",
        },
        separators=(",", ":"),
    )
    expected = hashlib.sha256(material.encode("utf-8")).hexdigest()
    assert compute_stable_id(" Goblet Squat ", ["Dumbbell"], ["Quads", "Glutes"], "Squat") == expected
    # Order and case of list values do not matter.
    assert compute_stable_id("goblet squat", ["dumbbell"], ["glutes", "quads"], "squat") == expected


def test_normalize_dataset_record():
    row = normalize_dataset_record(RECORDS[0], now="2026-01-10T00:00:00+00:00")
    assert row["slug"] == "barbell-bench-press-barbell-bench-press"
    assert row["status"] == "extended"
    assert row["source"] == DATASET_SOURCE
    assert row["stable_id"] == "free-exercise-db:Barbell_Bench_Press"
    assert row["equipment"] == ["barbell"]
    assert row["primary_muscles"] == ["chest"]
    assert row["muscle_group"] == "chest"
    assert row["pattern"] == "push"
    assert row["required_equipment_ids"] == ["barbell", "bench"]
    assert row["created_at"] == "2026-01-10T00:00:00+00:00"

    unnamed = normalize_dataset_record({})
    assert unnamed["name"] == "Unnamed Exercise"
    assert unnamed["slug"] == "unnamed-exercise"


def test_merge_never_overwrites():
    existing = {
        "name": "My Bench",
        "slug": "my-bench",
        "instructions": ["my cue"],
        "aliases": [],
        "optional_equipment_ids": None,
        "media": {},
        "created_at": "2025-01-01",
    }
    seed = normalize_dataset_record(RECORDS[0], now="2026-01-10T00:00:00+00:00")
    patch = merge_exercise(existing, seed, "2026-01-10T00:00:00+00:00")
    assert "name" not in patch
    assert "slug" not in patch
    assert "instructions" not in patch
    assert patch["secondary_muscles"] == ["triceps", "shoulders"]
    assert patch["optional_equipment_ids"] == []
    assert patch["updated_at"] == "2026-01-10T00:00:00+00:00"
    assert "created_at" not in patch
    full = {**existing, **patch}
    assert merge_exercise(full, seed, "later") == {}


@pytest.mark.asyncio
async def test_seed_is_versioned(tmp_path):
    store = await open_store(str(tmp_path / "seed.db"))
    try:
        before = await store.table("exercises").count()
        result = await seed_exercises(store, RECORDS, "v1")
        assert result == {"status": "seeded", "count": 2, "added": 2, "merged": 0}
        assert await store.table("exercises").count() == before + 2
        meta = await store.table("meta").get(SEED_VERSION_KEY)
        assert meta["value"] == "v1"

        assert await seed_exercises(store, RECORDS, "v1") == {"status": "skipped", "count": 0}
        assert await store.table("exercises").count() == before + 2
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_seed_merges_by_slug(tmp_path):
    store = await open_store(str(tmp_path / "merge.db"))
    try:
        await seed_exercises(store, RECORDS[1:], "v1")
        bug = await store.table("exercises").where(slug="dead-bug-dead-bug").first()
        await store.table("exercises").update(bug["id"], {"instructions": ["keep back flat"]})

        enriched = dict(RECORDS[1], instructions=["Lie on your back."], secondaryMuscles=["hip flexors"])
        result = await seed_exercises(store, [enriched], "v2")
        assert result["added"] == 0
        assert result["merged"] == 1

        bug = await store.table("exercises").get(bug["id"])
        assert bug["instructions"] == ["keep back flat"]
        assert bug["secondary_muscles"] == ["hip flexors"]
        assert await store.table("exercises").where(slug="dead-bug-dead-bug").count() == 1
    finally:
        await store.close()
