"""Transform raw exercise datasets into library rows and merge them in."""
from __future__ import annotations

import hashlib
import json
import re
from typing import Iterable, List, Optional

import structlog

from equipment import infer_exercise_equipment
from store import Store, utc_now

logger = structlog.get_logger(__name__)

EXERCISE_SEED_VERSION = "2026-01-10-free-exercise-db-v1"
DATASET_SOURCE = "free-exercise-db"
SEED_VERSION_KEY = "exercise_seed_version"

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(value: object) -> str:
    text = str(value if value is not None else "").strip().lower()
    return _SLUG_STRIP.sub("-", text).strip("-")


def unique_slug(base: str, taken: Iterable[str]) -> str:
    """``base``, then ``base-2``, ``base-3``, ... until free."""
    taken = set(taken)
    base = base or "exercise"
    slug, attempt = base, 1
    while slug in taken:
        attempt += 1
        slug = f"{base}-{attempt}"
    return slug


def _text(value: object) -> str:
    return str(value if value is not None else "").strip()


def string_list(value: object) -> List[str]:
    """Coerce a scalar or list into a de-duplicated list of non-empty strings."""
    if not value:
        return []
    items = value if isinstance(value, (list, tuple)) else [value]
    return list(dict.fromkeys(t for t in (_text(i) for i in items) if t))


def _first(record: dict, *keys: str):
    for key in keys:
        if record.get(key) not in (None, "", []):
            return record[key]
    return None


def compute_stable_id(
    name: object = None,
    equipment: Iterable[str] | None = None,
    primary_muscles: Iterable[str] | None = None,
    pattern: object = None,
    category: object = None,
    source: object = None,
    source_id: object = None,
) -> str:
    """Identity that survives re-imports.

    An external id is scoped by its source; otherwise the id is the SHA-256
    of the record's normalized content.
    """
    source_key = _text(source_id)
    normalized_source = _text(source).lower()
    if source_key:
        return f"{normalized_source}:{source_key}" if normalized_source else source_key
    material = json.dumps(
        {
            "name": _text(name).lower(),
            "equipment": sorted(i.lower() for i in string_list(list(equipment or []))),
            "primaryMuscles": sorted(
                i.lower() for i in string_list(list(primary_muscles or []))
            ),
            "pattern": _text(pattern).lower(),
            "category": _text(category).lower(),
        },
        separators=(",", ":"),
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def normalize_dataset_record(record: dict, now: Optional[str] = None) -> dict:
    """Map one raw dataset record onto the exercises table layout."""
    now = now or utc_now()
    record = record or {}
    name = _text(_first(record, "name", "exercise_name", "exerciseName", "title"))
    name = name or "Unnamed Exercise"
    raw_id = _text(_first(record, "id", "exerciseId", "_id"))
    base_slug = slugify(name)
    slug = f"{slugify(raw_id) or raw_id}-{base_slug or 'exercise'}" if raw_id else base_slug
    slug = slug or "exercise"

    primary = string_list(_first(record, "primaryMuscles", "primary_muscles"))
    equipment = string_list(_first(record, "equipment", "equipmentList"))
    category = _text(_first(record, "category", "type", "movement"))
    pattern = _text(_first(record, "pattern", "mechanic", "force"))
    mistakes = string_list(_first(record, "commonMistakes", "gotchas", "tips", "cues"))
    video = _text(_first(record, "videoUrl", "video_url"))

    row = {
        "name": name,
        "slug": slug,
        "status": "extended",
        "source": DATASET_SOURCE,
        "is_custom": False,
        "default_sets": 3,
        "default_reps": 10,
        "muscle_group": primary[0] if primary else None,
        "video_url": video or None,
        "aliases": string_list(_first(record, "aliases", "alternativeNames")),
        "primary_muscles": primary,
        "secondary_muscles": string_list(
            _first(record, "secondaryMuscles", "secondary_muscles")
        ),
        "equipment": equipment,
        "category": category or None,
        "pattern": pattern or None,
        "instructions": string_list(
            _first(record, "instructions", "steps", "execution", "howTo")
        ),
        "common_mistakes": mistakes,
        "progressions": string_list(
            _first(record, "progressions", "progression", "advanced_exercises")
        ),
        "regressions": string_list(
            _first(record, "regressions", "regression", "beginner_exercises")
        ),
        "media": {"video_url": video} if video else {},
        "stable_id": compute_stable_id(
            name, equipment, primary, pattern, category, DATASET_SOURCE, raw_id
        ),
        "created_at": now,
        "updated_at": now,
    }
    row.update(infer_exercise_equipment(row))
    return row


def starter_exercise_row(raw: dict, now: Optional[str] = None) -> dict:
    """Row for one entry of the bundled starter library."""
    now = now or utc_now()
    name = _text(raw.get("name"))
    group = _text(raw.get("muscle_group"))
    primary = string_list(raw.get("primary_muscles")) or ([group] if group else [])
    video = _text(raw.get("video_url"))
    row = {
        "name": name,
        "slug": slugify(name) or "exercise",
        "status": "starter",
        "source": "starter",
        "is_custom": False,
        "default_sets": raw.get("default_sets", 3),
        "default_reps": raw.get("default_reps", 10),
        "muscle_group": group or None,
        "video_url": video or None,
        "aliases": string_list(raw.get("aliases")),
        "primary_muscles": primary,
        "secondary_muscles": string_list(raw.get("secondary_muscles")),
        "equipment": [],
        "category": raw.get("category"),
        "pattern": raw.get("pattern"),
        "instructions": string_list(raw.get("instructions")),
        "common_mistakes": string_list(raw.get("common_mistakes")),
        "progressions": string_list(raw.get("progressions")),
        "regressions": string_list(raw.get("regressions")),
        "media": {"video_url": video} if video else {},
        "created_at": now,
        "updated_at": now,
    }
    row.update(infer_exercise_equipment(row))
    row["equipment"] = list(row["required_equipment_ids"])
    row["stable_id"] = compute_stable_id(
        name, row["equipment"], primary, row["pattern"], row["category"]
    )
    return row


_MERGE_TEXT_FIELDS = ("name", "slug", "source", "status", "category", "pattern", "stable_id")
_MERGE_LIST_FIELDS = (
    "instructions",
    "common_mistakes",
    "primary_muscles",
    "secondary_muscles",
    "equipment",
    "aliases",
    "required_equipment_ids",
)


def merge_exercise(existing: dict, seed: dict, now: str) -> dict:
    """Fields to fill on ``existing``; never overwrites user data."""
    patch = {}
    for key in _MERGE_TEXT_FIELDS:
        if not _text(existing.get(key)) and seed.get(key):
            patch[key] = seed[key]
    for key in _MERGE_LIST_FIELDS:
        if not existing.get(key) and seed.get(key):
            patch[key] = seed[key]
    if existing.get("optional_equipment_ids") is None:
        patch["optional_equipment_ids"] = seed.get("optional_equipment_ids") or []
    media = dict(existing.get("media") or {})
    if not media.get("video_url") and (seed.get("media") or {}).get("video_url"):
        media["video_url"] = seed["media"]["video_url"]
        patch["media"] = media
    if patch:
        patch["updated_at"] = now
        if not existing.get("created_at"):
            patch["created_at"] = seed.get("created_at") or now
    return patch


async def seed_exercises(
    store: Store, records: Iterable[dict], version: str = EXERCISE_SEED_VERSION
) -> dict:
    """Merge a dataset into the library once per ``version``."""
    meta = store.table("meta")
    current = await meta.get(SEED_VERSION_KEY)
    if current and current.get("value") == version:
        logger.info("exercise_seed_skipped", version=version)
        return {"status": "skipped", "count": 0}

    now = utc_now()
    normalized: dict[str, dict] = {}
    for record in records or []:
        row = normalize_dataset_record(record, now)
        normalized.setdefault(row["slug"], row)

    added = merged = 0
    async with store.transaction("rw", ["exercises", "meta"]) as tx:
        exercises = tx.table("exercises")
        existing = await exercises.where_in("slug", list(normalized)).to_list()
        by_slug = {row["slug"]: row for row in existing}
        for slug, row in normalized.items():
            current_row = by_slug.get(slug)
            if current_row is None:
                await exercises.add(row)
                added += 1
                continue
            patch = merge_exercise(current_row, row, now)
            if patch:
                await exercises.update(current_row["id"], patch)
                merged += 1
        await tx.table("meta").put({"key": SEED_VERSION_KEY, "value": version})

    logger.info("exercise_seed_applied", version=version, added=added, merged=merged)
    return {"status": "seeded", "count": len(normalized), "added": added, "merged": merged}
