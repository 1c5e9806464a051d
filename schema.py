"""Versioned table layouts for the planner store and their upgrade steps.

Every declared version carries the complete layout of the store at that
version. Layouts only ever grow: tables, columns and indexes are added,
never dropped, and a deprecated table stays declared so existing files
keep opening.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

import structlog

from equipment import EQUIPMENT_CATALOG, EQUIPMENT_IDS, infer_exercise_equipment
from errors import MigrationError
from seed import DATASET_SOURCE, compute_stable_id, slugify, starter_exercise_row, unique_slug
from starter_data import STARTER_EXERCISES
from store import (
    BOOLEAN,
    INTEGER,
    JSON,
    TEXT,
    Layout,
    Store,
    TableSpec,
    Transaction,
    utc_now,
)

logger = structlog.get_logger(__name__)

Upgrade = Callable[[Transaction], Awaitable[None]]

DEFAULT_REST_SECONDS = 90
DEFAULT_GYM_NAME = "Default Gym"
DEFAULT_GYM_DESCRIPTION = "All equipment available."


@dataclass
class SchemaVersion:
    number: int
    layout: Layout
    upgrade: Optional[Upgrade] = None


class SchemaManager:
    """Ordered chain of schema versions applied inside one transaction."""

    def __init__(self, populate: Optional[Upgrade] = None) -> None:
        self.versions: List[SchemaVersion] = []
        self.populate = populate

    @property
    def latest(self) -> SchemaVersion:
        if not self.versions:
            raise ValueError("no schema versions declared")
        return self.versions[-1]

    def declare_version(
        self, number: int, layout: Layout, upgrade: Optional[Upgrade] = None
    ) -> "SchemaManager":
        if self.versions:
            previous = self.versions[-1]
            if number <= previous.number:
                raise ValueError(
                    f"version {number} must be greater than {previous.number}"
                )
            for name, spec in previous.layout.items():
                if name not in layout:
                    raise ValueError(f"version {number} drops table {name!r}")
                if not layout[name].covers(spec):
                    raise ValueError(
                        f"version {number} removes columns or indexes from {name!r}"
                    )
        self.versions.append(SchemaVersion(number, dict(layout), upgrade))
        return self

    def pending(self, current: int) -> List[SchemaVersion]:
        return [v for v in self.versions if v.number > current]

    async def apply(self, store: Store) -> int:
        """Bring ``store`` to the latest version and return that version.

        A fresh store is created at the latest layout and populated. A store
        behind runs every pending layout and upgrade in one transaction;
        on any failure nothing is kept and ``MigrationError`` is raised.
        """
        latest = self.latest
        current = await store.user_version()
        if current > latest.number:
            raise MigrationError(
                f"store version {current} is newer than {latest.number}",
                from_version=current,
                to_version=latest.number,
            )
        if current == latest.number:
            store.use_layout(latest.layout)
            logger.debug("schema_up_to_date", version=current)
            return current

        previous_layout = store.layout
        fresh = current == 0
        steps = [latest] if fresh else self.pending(current)
        try:
            async with store.transaction("rw", latest.layout) as tx:
                for step in steps:
                    store.use_layout(step.layout)
                    await ensure_layout(tx, step.layout)
                    if not fresh and step.upgrade is not None:
                        await step.upgrade(tx)
                    logger.info(
                        "schema_upgrade_applied", version=step.number, fresh=fresh
                    )
                if fresh and self.populate is not None:
                    await self.populate(tx)
                    logger.info("schema_populated", version=latest.number)
                await tx.execute(f"PRAGMA user_version = {int(latest.number)};")
        except Exception as exc:
            store.use_layout(previous_layout)
            logger.error(
                "schema_upgrade_failed",
                from_version=current,
                to_version=latest.number,
                error=str(exc),
            )
            raise MigrationError(
                f"upgrade from {current} to {latest.number} failed: {exc}",
                from_version=current,
                to_version=latest.number,
            ) from exc
        return latest.number

    async def rerun_upgrades(self, store: Store) -> None:
        """Run every declared upgrade against a store at the latest layout."""
        latest = self.latest
        store.use_layout(latest.layout)
        async with store.transaction("rw", latest.layout) as tx:
            for version in self.versions:
                if version.upgrade is not None:
                    await version.upgrade(tx)


async def ensure_layout(tx: Transaction, layout: Layout) -> None:
    """Create missing tables, columns and indexes; never drops anything."""
    for name, spec in layout.items():
        rows = await tx.fetch_all(f"PRAGMA table_info({name});")
        if not rows:
            await tx.execute(spec.create_sql(name))
        else:
            existing = {row[1] for row in rows}
            for column in spec.columns:
                if column not in existing:
                    await tx.execute(spec.add_column_sql(name, column))
        for statement in spec.index_sql(name):
            await tx.execute(statement)


# --------------------
# Layouts
# --------------------

_EXERCISES_V2 = TableSpec(
    {
        "id": INTEGER,
        "name": TEXT,
        "default_sets": INTEGER,
        "default_reps": INTEGER,
        "muscle_group": TEXT,
        "video_url": TEXT,
        "is_custom": BOOLEAN,
    },
    indexes=["name", "default_sets", "default_reps", "muscle_group", "video_url", "is_custom"],
)
_LOGS = TableSpec({"id": INTEGER, "date": TEXT, "entry": JSON}, indexes=["date"])
_SETTINGS_V2 = TableSpec(
    {"id": INTEGER, "api_key": TEXT, "coach_persona": TEXT},
    indexes=["api_key", "coach_persona"],
    auto_increment=False,
)
_TEMPLATES_V2 = TableSpec(
    {"id": INTEGER, "name": TEXT, "created_at": TEXT, "updated_at": TEXT},
    indexes=["name", "created_at", "updated_at"],
)
_TEMPLATE_ITEMS = TableSpec(
    {
        "id": INTEGER,
        "template_id": INTEGER,
        "exercise_id": INTEGER,
        "sort_order": INTEGER,
        "target_sets": INTEGER,
        "target_reps": INTEGER,
        "notes": TEXT,
        "created_at": TEXT,
        "updated_at": TEXT,
    },
    indexes=[
        "template_id",
        "exercise_id",
        "sort_order",
        "target_sets",
        "target_reps",
        "notes",
        "created_at",
        "updated_at",
    ],
    unique=[("template_id", "exercise_id")],
)
_SESSIONS_V3 = TableSpec(
    {"id": INTEGER, "started_at": TEXT, "finished_at": TEXT, "template_id": INTEGER},
    indexes=["started_at", "finished_at", "template_id"],
)
_WORKOUT_ITEMS_V3 = TableSpec(
    {
        "id": INTEGER,
        "workout_id": INTEGER,
        "exercise_id": INTEGER,
        "sort_order": INTEGER,
        "target_sets": INTEGER,
        "target_reps": INTEGER,
        "notes": TEXT,
    },
    indexes=[
        "workout_id",
        "exercise_id",
        "sort_order",
        "target_sets",
        "target_reps",
        "notes",
        ("workout_id", "exercise_id"),
    ],
)
_WORKOUT_SETS_V3 = TableSpec(
    {
        "id": INTEGER,
        "workout_item_id": INTEGER,
        "set_number": INTEGER,
        "weight": TEXT,
        "reps": TEXT,
    },
    indexes=["workout_item_id", "set_number"],
)
_PLANNED_WORKOUTS = TableSpec(
    {
        "id": INTEGER,
        "date": TEXT,
        "template_id": INTEGER,
        "exercises": JSON,
        "source": TEXT,
        "created_at": TEXT,
        "updated_at": TEXT,
    },
    indexes=["date", "created_at", "updated_at", "source", "template_id"],
)
_EQUIPMENT = TableSpec(
    {"id": TEXT, "name": TEXT, "category": TEXT, "is_portable": BOOLEAN, "aliases": JSON},
    indexes=["name", "category", "is_portable"],
    auto_increment=False,
)
_WORKOUT_SPACES = TableSpec(
    {
        "id": INTEGER,
        "name": TEXT,
        "description": TEXT,
        "equipment_ids": JSON,
        "is_default": BOOLEAN,
        "is_temporary": BOOLEAN,
        "expires_at": TEXT,
        "created_at": TEXT,
        "updated_at": TEXT,
    },
    indexes=["name", "is_default", "is_temporary", "expires_at", "updated_at"],
)
_META = TableSpec({"key": TEXT, "value": JSON}, primary_key="key", auto_increment=False)

_EXERCISES_V6 = _EXERCISES_V2.extend(
    {"required_equipment_ids": JSON, "optional_equipment_ids": JSON}
)
_EXERCISES_V7 = _EXERCISES_V6.extend(
    {
        "primary_muscles": JSON,
        "secondary_muscles": JSON,
        "instructions": JSON,
        "common_mistakes": JSON,
        "progressions": JSON,
        "regressions": JSON,
        "aliases": JSON,
        "media": JSON,
        "created_at": TEXT,
        "updated_at": TEXT,
    }
)
_EXERCISES_V8 = _EXERCISES_V7.extend(
    {
        "slug": TEXT,
        "status": TEXT,
        "source": TEXT,
        "stable_id": TEXT,
        "equipment": JSON,
        "category": TEXT,
        "pattern": TEXT,
    },
    indexes=["status", "source", "stable_id", "category", "pattern"],
    unique=[("slug",)],
)

LAYOUT_V2: Layout = {
    "exercises": _EXERCISES_V2,
    "logs": _LOGS,
    "settings": _SETTINGS_V2,
    "templates": _TEMPLATES_V2,
    "template_items": _TEMPLATE_ITEMS,
}
LAYOUT_V3: Layout = {
    **LAYOUT_V2,
    "workouts": _SESSIONS_V3,
    "workout_items": _WORKOUT_ITEMS_V3,
    "workout_sets": _WORKOUT_SETS_V3,
}
LAYOUT_V4: Layout = {**LAYOUT_V3, "workout_sessions": _SESSIONS_V3}
LAYOUT_V5: Layout = {**LAYOUT_V4, "planned_workouts": _PLANNED_WORKOUTS}
LAYOUT_V6: Layout = {
    **LAYOUT_V5,
    "exercises": _EXERCISES_V6,
    "equipment": _EQUIPMENT,
    "workout_spaces": _WORKOUT_SPACES,
}
LAYOUT_V7: Layout = {**LAYOUT_V6, "exercises": _EXERCISES_V7}
LAYOUT_V8: Layout = {**LAYOUT_V7, "exercises": _EXERCISES_V8, "meta": _META}
LAYOUT_V9: Layout = {
    **LAYOUT_V8,
    "workout_sessions": _SESSIONS_V3.extend(
        {
            "space_id": INTEGER,
            "session_note": TEXT,
            "session_reflection": TEXT,
            "exercise_notes": JSON,
        },
        indexes=["space_id"],
    ),
    "workout_items": _WORKOUT_ITEMS_V3.extend({"rest_seconds": INTEGER}),
    "workout_sets": _WORKOUT_SETS_V3.extend({"is_warmup": BOOLEAN, "is_complete": BOOLEAN}),
    "templates": _TEMPLATES_V2.extend({"space_id": INTEGER}, indexes=["space_id"]),
    "settings": _SETTINGS_V2.extend(
        {"rest_enabled": BOOLEAN, "rest_default_seconds": INTEGER, "active_space_id": INTEGER}
    ),
}


# --------------------
# Upgrade steps
# --------------------


def default_gym_row(now: str) -> dict:
    return {
        "name": DEFAULT_GYM_NAME,
        "description": DEFAULT_GYM_DESCRIPTION,
        "equipment_ids": list(EQUIPMENT_IDS),
        "is_default": True,
        "is_temporary": False,
        "expires_at": None,
        "created_at": now,
        "updated_at": now,
    }


async def backfill_template_timestamps(tx: Transaction) -> None:
    now = utc_now()

    def fill(template: dict) -> None:
        if template.get("created_at") is None:
            template["created_at"] = now
        if template.get("updated_at") is None:
            template["updated_at"] = now

    await tx.table("templates").to_collection().modify(fill)


async def copy_legacy_sessions(tx: Transaction) -> None:
    """Copy legacy ``workouts`` rows missing from ``workout_sessions``."""
    legacy = await tx.table("workouts").to_list()
    if not legacy:
        return
    sessions = tx.table("workout_sessions")
    existing = set(await sessions.to_collection().primary_keys())
    missing = [row for row in legacy if row["id"] not in existing]
    for row in missing:
        await sessions.add(
            {
                "id": row["id"],
                "started_at": row.get("started_at"),
                "finished_at": row.get("finished_at"),
                "template_id": row.get("template_id"),
            }
        )
    if missing:
        logger.info("legacy_sessions_copied", count=len(missing))


def _fill_equipment(exercise: dict) -> None:
    required = exercise.get("required_equipment_ids") or []
    optional = exercise.get("optional_equipment_ids")
    if required and optional is not None:
        return
    inferred = infer_exercise_equipment(exercise)
    if not required:
        exercise["required_equipment_ids"] = inferred["required_equipment_ids"]
    if optional is None:
        exercise["optional_equipment_ids"] = inferred["optional_equipment_ids"]


async def seed_equipment_catalog(tx: Transaction) -> None:
    table = tx.table("equipment")
    existing = set(await table.to_collection().primary_keys())
    for item in EQUIPMENT_CATALOG:
        if item["id"] not in existing:
            await table.put(dict(item))


async def ensure_default_space(tx: Transaction) -> None:
    spaces = tx.table("workout_spaces")
    if await spaces.count() == 0:
        await spaces.add(default_gym_row(utc_now()))


async def add_spaces_and_equipment(tx: Transaction) -> None:
    await seed_equipment_catalog(tx)
    await ensure_default_space(tx)
    await tx.table("exercises").to_collection().modify(_fill_equipment)


_LIST_FIELDS = (
    "secondary_muscles",
    "instructions",
    "common_mistakes",
    "progressions",
    "regressions",
    "aliases",
)


def _fill_metadata(exercise: dict) -> None:
    if not exercise.get("primary_muscles"):
        legacy = str(exercise.get("muscle_group") or "").strip()
        exercise["primary_muscles"] = [legacy] if legacy else []
    for key in _LIST_FIELDS:
        if not isinstance(exercise.get(key), list):
            exercise[key] = []
    _fill_equipment(exercise)
    media = exercise.get("media")
    if not isinstance(media, dict):
        media = exercise["media"] = {}
    if exercise.get("video_url") and not media.get("video_url"):
        media["video_url"] = exercise["video_url"]


async def backfill_exercise_metadata(tx: Transaction) -> None:
    await tx.table("exercises").to_collection().modify(_fill_metadata)


async def backfill_exercise_identity(tx: Transaction) -> None:
    """Assign slug, status, source and stable id where missing."""
    exercises = tx.table("exercises")
    rows = await exercises.order_by("id")
    taken = {row["slug"] for row in rows if row.get("slug")}
    for row in rows:
        patch = {}
        custom = bool(row.get("is_custom"))
        if not row.get("slug"):
            patch["slug"] = unique_slug(slugify(row.get("name")), taken)
            taken.add(patch["slug"])
        source = row.get("source")
        if not source:
            source = patch["source"] = "user" if custom else "starter"
        if not row.get("status"):
            if custom:
                patch["status"] = "user"
            elif source == DATASET_SOURCE:
                patch["status"] = "extended"
            else:
                patch["status"] = "starter"
        equipment = row.get("equipment")
        if equipment is None:
            equipment = patch["equipment"] = list(row.get("required_equipment_ids") or [])
        if not row.get("stable_id"):
            patch["stable_id"] = compute_stable_id(
                row.get("name"),
                equipment,
                row.get("primary_muscles"),
                row.get("pattern"),
                row.get("category"),
            )
        if patch:
            await exercises.update(row["id"], patch)


def _fill_session(session: dict) -> None:
    if not isinstance(session.get("exercise_notes"), dict):
        session["exercise_notes"] = {}


def _fill_set(workout_set: dict) -> None:
    if workout_set.get("is_warmup") is None:
        workout_set["is_warmup"] = False
    if workout_set.get("is_complete") is None:
        workout_set["is_complete"] = bool(str(workout_set.get("reps") or "").strip())


def _fill_settings(settings: dict) -> None:
    if settings.get("rest_enabled") is None:
        settings["rest_enabled"] = True
    if settings.get("rest_default_seconds") is None:
        settings["rest_default_seconds"] = DEFAULT_REST_SECONDS


async def finalize_session_split(tx: Transaction) -> None:
    """Last legacy copy, then defaults for the session-detail columns."""
    await copy_legacy_sessions(tx)
    await tx.table("workout_sessions").to_collection().modify(_fill_session)
    await tx.table("workout_sets").to_collection().modify(_fill_set)
    await tx.table("settings").to_collection().modify(_fill_settings)


async def populate(tx: Transaction) -> None:
    """First-run content: catalog, default gym, starter library, settings."""
    now = utc_now()
    await seed_equipment_catalog(tx)
    await ensure_default_space(tx)
    exercises = tx.table("exercises")
    if await exercises.count() == 0:
        for raw in STARTER_EXERCISES:
            await exercises.add(starter_exercise_row(raw, now))
    settings = tx.table("settings")
    if await settings.get(1) is None:
        await settings.put(
            {
                "id": 1,
                "api_key": None,
                "coach_persona": None,
                "rest_enabled": True,
                "rest_default_seconds": DEFAULT_REST_SECONDS,
                "active_space_id": None,
            }
        )


def build_schema() -> SchemaManager:
    manager = SchemaManager(populate=populate)
    manager.declare_version(2, LAYOUT_V2, backfill_template_timestamps)
    manager.declare_version(3, LAYOUT_V3, backfill_template_timestamps)
    manager.declare_version(4, LAYOUT_V4, copy_legacy_sessions)
    manager.declare_version(5, LAYOUT_V5)
    manager.declare_version(6, LAYOUT_V6, add_spaces_and_equipment)
    manager.declare_version(7, LAYOUT_V7, backfill_exercise_metadata)
    manager.declare_version(8, LAYOUT_V8, backfill_exercise_identity)
    manager.declare_version(9, LAYOUT_V9, finalize_session_split)
    return manager


SCHEMA = build_schema()
LATEST_VERSION = SCHEMA.latest.number


async def open_store(path: str, schema: SchemaManager = SCHEMA) -> Store:
    """Open ``path`` and bring it to the latest schema version."""
    store = Store(path)
    await store.open()
    try:
        await schema.apply(store)
    except Exception:
        await store.close()
        raise
    return store
