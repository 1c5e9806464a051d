"""Repositories for direct edits to the planner store."""
from __future__ import annotations

import datetime
import math
import re
from typing import Any, Iterable, List, Optional

import structlog

from equipment import EQUIPMENT_ID_SET, normalize_exercise_equipment, normalize_space_equipment_ids
from errors import ReferencedExerciseError
from schema import DEFAULT_REST_SECONDS
from seed import compute_stable_id, slugify, string_list, unique_slug
from store import Store, Transaction, utc_now

logger = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: object) -> str:
    """Case- and whitespace-insensitive key used for name collisions."""
    return _WHITESPACE.sub(" ", str(name if name is not None else "").strip().lower())


def disambiguate_name(name: str, taken: Iterable[str]) -> str:
    """Return ``name`` or the first free ``"name (n)"`` for n = 2, 3, ..."""
    used = {normalize_name(t) for t in taken}
    if normalize_name(name) not in used:
        return name
    attempt = 2
    while normalize_name(f"{name} ({attempt})") in used:
        attempt += 1
    return f"{name} ({attempt})"


def format_set_value(value: Any) -> str:
    """Canonical text for a set's weight or reps; ``""`` when empty."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return ""
    if isinstance(value, bool):
        raise ValueError("value must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError("value must be numeric") from None
    if not math.isfinite(number):
        raise ValueError("value must be numeric")
    if number.is_integer():
        return str(int(number))
    return repr(number)


def _parse_time(value: object) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def is_space_expired(space: dict, now: Optional[datetime.datetime] = None) -> bool:
    if not space.get("is_temporary"):
        return False
    expires = _parse_time(space.get("expires_at"))
    if expires is None:
        return False
    return expires < (now or datetime.datetime.now(datetime.timezone.utc))


def _only(changes: dict, allowed: Iterable[str]) -> dict:
    unknown = set(changes) - set(allowed)
    if unknown:
        raise ValueError(f"unsupported fields: {', '.join(sorted(unknown))}")
    return dict(changes)


async def densify(tx: Transaction, table: str, parent_field: str, parent_id: int, field: str, start: int) -> None:
    """Renumber ``field`` of a parent's children to ``start, start + 1, ...``."""
    rows = await tx.table(table).where(**{parent_field: parent_id}).sort_by(field)
    for position, row in enumerate(rows, start):
        if row[field] != position:
            await tx.table(table).update(row["id"], {field: position})


async def set_default_space(tx: Transaction, space_id: int, now: str) -> None:
    """Mark ``space_id`` default and clear every other default."""
    spaces = tx.table("workout_spaces")
    await spaces.where(is_default=True).filter(lambda s: s["id"] != space_id).modify(
        {"is_default": False, "updated_at": now}
    )
    await spaces.update(space_id, {"is_default": True, "updated_at": now})


async def read_settings(tx: Transaction) -> dict:
    row = await tx.table("settings").get(1)
    return row or {"id": 1}


def rest_seconds_from(settings: dict) -> int:
    value = settings.get("rest_default_seconds")
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return DEFAULT_REST_SECONDS


class BaseRepository:
    """Base repository holding the injected store."""

    def __init__(self, store: Store) -> None:
        self.store = store


class TemplateRepository(BaseRepository):
    """Repository for reusable workout templates and their items."""

    async def create(self, name: str, space_id: Optional[int] = None) -> int:
        now = utc_now()
        safe = str(name or "").strip() or "Untitled Template"
        async with self.store.transaction("rw", ["templates", "workout_spaces"]) as tx:
            if space_id is not None and await tx.table("workout_spaces").get(space_id) is None:
                raise ValueError("space not found")
            return await tx.table("templates").add(
                {"name": safe, "space_id": space_id, "created_at": now, "updated_at": now}
            )

    async def get(self, template_id: int) -> Optional[dict]:
        return await self.store.table("templates").get(template_id)

    async def list(self) -> List[dict]:
        return await self.store.table("templates").order_by("updated_at", reverse=True)

    async def update(self, template_id: int, **changes: Any) -> None:
        changes = _only(changes, ("name", "space_id"))
        if "name" in changes:
            changes["name"] = str(changes["name"] or "").strip() or "Untitled Template"
        changes["updated_at"] = utc_now()
        if not await self.store.table("templates").update(template_id, changes):
            raise ValueError("template not found")

    async def rename(self, template_id: int, name: str) -> None:
        await self.update(template_id, name=name)

    async def delete(self, template_id: int) -> None:
        async with self.store.transaction("rw", ["templates", "template_items"]) as tx:
            if await tx.table("templates").get(template_id) is None:
                raise ValueError("template not found")
            await tx.table("template_items").where(template_id=template_id).delete()
            await tx.table("templates").delete(template_id)

    async def items(self, template_id: int) -> List[dict]:
        return await self.store.table("template_items").where(template_id=template_id).sort_by(
            "sort_order"
        )

    async def add_exercise(
        self,
        template_id: int,
        exercise_id: int,
        target_sets: Optional[int] = None,
        target_reps: Optional[int] = None,
        notes: str = "",
    ) -> int:
        now = utc_now()
        async with self.store.transaction(
            "rw", ["templates", "template_items", "exercises"]
        ) as tx:
            if await tx.table("templates").get(template_id) is None:
                raise ValueError("template not found")
            exercise = await tx.table("exercises").get(exercise_id)
            if exercise is None:
                raise ValueError("exercise not found")
            items = tx.table("template_items")
            if await items.where(template_id=template_id, exercise_id=exercise_id).first():
                raise ValueError("exercise already in template")
            position = await items.where(template_id=template_id).count()
            item_id = await items.add(
                {
                    "template_id": template_id,
                    "exercise_id": exercise_id,
                    "sort_order": position,
                    "target_sets": target_sets or exercise.get("default_sets") or 3,
                    "target_reps": target_reps or exercise.get("default_reps"),
                    "notes": notes or "",
                    "created_at": now,
                    "updated_at": now,
                }
            )
            await tx.table("templates").update(template_id, {"updated_at": now})
            return item_id

    async def update_item(self, item_id: int, **changes: Any) -> None:
        changes = _only(changes, ("target_sets", "target_reps", "notes"))
        changes["updated_at"] = utc_now()
        if not await self.store.table("template_items").update(item_id, changes):
            raise ValueError("item not found")

    async def remove_item(self, item_id: int) -> None:
        async with self.store.transaction("rw", ["template_items"]) as tx:
            item = await tx.table("template_items").get(item_id)
            if item is None:
                raise ValueError("item not found")
            await tx.table("template_items").delete(item_id)
            await densify(tx, "template_items", "template_id", item["template_id"], "sort_order", 0)

    async def reorder_items(self, template_id: int, order: List[int]) -> None:
        async with self.store.transaction("rw", ["template_items"]) as tx:
            items = tx.table("template_items")
            existing = await items.where(template_id=template_id).primary_keys()
            if sorted(existing) != sorted(order) or len(set(order)) != len(order):
                raise ValueError("invalid order")
            for position, item_id in enumerate(order):
                await items.update(item_id, {"sort_order": position})


_SESSION_TABLES = ["workout_sessions", "workout_items", "workout_sets"]


class WorkoutSessionRepository(BaseRepository):
    """Repository for realized workout sessions, their items and sets."""

    async def get(self, session_id: int) -> Optional[dict]:
        return await self.store.table("workout_sessions").get(session_id)

    async def create_empty(self, space_id: Optional[int] = None, template_id: Optional[int] = None) -> int:
        return await self.store.table("workout_sessions").add(
            {
                "started_at": utc_now(),
                "finished_at": None,
                "template_id": template_id,
                "space_id": space_id,
                "session_note": "",
                "session_reflection": "",
                "exercise_notes": {},
            }
        )

    async def start_from_template(self, template_id: int, space_id: Optional[int] = None) -> int:
        tables = ["templates", "template_items", "exercises", "settings"] + _SESSION_TABLES
        async with self.store.transaction("rw", tables) as tx:
            template = await tx.table("templates").get(template_id)
            if template is None:
                raise ValueError("template not found")
            items = await tx.table("template_items").where(template_id=template_id).sort_by(
                "sort_order"
            )
            if not items:
                raise ValueError("template has no exercises")
            rest = rest_seconds_from(await read_settings(tx))
            exercises = await tx.table("exercises").bulk_get(i["exercise_id"] for i in items)
            session_id = await tx.table("workout_sessions").add(
                {
                    "started_at": utc_now(),
                    "finished_at": None,
                    "template_id": template_id,
                    "space_id": space_id if space_id is not None else template.get("space_id"),
                    "session_note": "",
                    "session_reflection": "",
                    "exercise_notes": {},
                }
            )
            for position, (item, exercise) in enumerate(zip(items, exercises)):
                exercise = exercise or {}
                target_sets = item.get("target_sets") or exercise.get("default_sets") or 3
                target_reps = item.get("target_reps") or exercise.get("default_reps")
                await self._add_item(
                    tx, session_id, item["exercise_id"], position, target_sets, target_reps, rest, item.get("notes") or ""
                )
        logger.info("session_started", session_id=session_id, template_id=template_id)
        return session_id

    async def _add_item(
        self,
        tx: Transaction,
        session_id: int,
        exercise_id: int,
        position: int,
        target_sets: int,
        target_reps: Optional[int],
        rest_seconds: int,
        notes: str = "",
    ) -> int:
        item_id = await tx.table("workout_items").add(
            {
                "workout_id": session_id,
                "exercise_id": exercise_id,
                "sort_order": position,
                "target_sets": target_sets,
                "target_reps": target_reps,
                "rest_seconds": rest_seconds,
                "notes": notes,
            }
        )
        reps = format_set_value(target_reps)
        for number in range(1, int(target_sets) + 1):
            await tx.table("workout_sets").add(
                {
                    "workout_item_id": item_id,
                    "set_number": number,
                    "weight": "",
                    "reps": reps,
                    "is_warmup": False,
                    "is_complete": False,
                }
            )
        return item_id

    async def finish(self, session_id: int) -> None:
        if not await self.store.table("workout_sessions").update(
            session_id, {"finished_at": utc_now()}
        ):
            raise ValueError("workout not found")

    async def update(self, session_id: int, **changes: Any) -> None:
        changes = _only(
            changes,
            (
                "started_at",
                "finished_at",
                "space_id",
                "session_note",
                "session_reflection",
                "exercise_notes",
            ),
        )
        if not changes:
            return
        if not await self.store.table("workout_sessions").update(session_id, changes):
            raise ValueError("workout not found")

    async def delete(self, session_id: int) -> None:
        async with self.store.transaction("rw", _SESSION_TABLES) as tx:
            if await tx.table("workout_sessions").get(session_id) is None:
                raise ValueError("workout not found")
            item_ids = await tx.table("workout_items").where(workout_id=session_id).primary_keys()
            await tx.table("workout_sets").where_in("workout_item_id", item_ids).delete()
            await tx.table("workout_items").where(workout_id=session_id).delete()
            await tx.table("workout_sessions").delete(session_id)

    async def add_exercise(self, session_id: int, exercise_id: int) -> int:
        tables = ["exercises", "settings"] + _SESSION_TABLES
        async with self.store.transaction("rw", tables) as tx:
            if await tx.table("workout_sessions").get(session_id) is None:
                raise ValueError("workout not found")
            exercise = await tx.table("exercises").get(exercise_id)
            if exercise is None:
                raise ValueError("exercise not found")
            items = tx.table("workout_items")
            if await items.where(workout_id=session_id, exercise_id=exercise_id).first():
                raise ValueError("exercise already in workout")
            position = await items.where(workout_id=session_id).count()
            rest = rest_seconds_from(await read_settings(tx))
            return await self._add_item(
                tx,
                session_id,
                exercise_id,
                position,
                exercise.get("default_sets") or 3,
                exercise.get("default_reps"),
                rest,
            )

    async def remove_item(self, item_id: int) -> None:
        async with self.store.transaction("rw", ["workout_items", "workout_sets"]) as tx:
            item = await tx.table("workout_items").get(item_id)
            if item is None:
                raise ValueError("item not found")
            await tx.table("workout_sets").where(workout_item_id=item_id).delete()
            await tx.table("workout_items").delete(item_id)
            await densify(tx, "workout_items", "workout_id", item["workout_id"], "sort_order", 0)

    async def add_set(self, item_id: int, weight: Any = "", reps: Any = "") -> int:
        async with self.store.transaction("rw", ["workout_items", "workout_sets"]) as tx:
            if await tx.table("workout_items").get(item_id) is None:
                raise ValueError("item not found")
            sets = tx.table("workout_sets")
            number = await sets.where(workout_item_id=item_id).count() + 1
            return await sets.add(
                {
                    "workout_item_id": item_id,
                    "set_number": number,
                    "weight": format_set_value(weight),
                    "reps": format_set_value(reps),
                    "is_warmup": False,
                    "is_complete": False,
                }
            )

    async def remove_set(self, set_id: int) -> None:
        async with self.store.transaction("rw", ["workout_sets"]) as tx:
            row = await tx.table("workout_sets").get(set_id)
            if row is None:
                raise ValueError("set not found")
            await tx.table("workout_sets").delete(set_id)
            await densify(tx, "workout_sets", "workout_item_id", row["workout_item_id"], "set_number", 1)

    async def update_set(self, set_id: int, **changes: Any) -> None:
        changes = _only(changes, ("weight", "reps", "is_warmup", "is_complete"))
        for key in ("weight", "reps"):
            if key in changes:
                changes[key] = format_set_value(changes[key])
        if not changes:
            return
        if not await self.store.table("workout_sets").update(set_id, changes):
            raise ValueError("set not found")

    async def update_item(self, item_id: int, **changes: Any) -> None:
        changes = _only(changes, ("target_sets", "target_reps", "rest_seconds", "notes"))
        if not changes:
            return
        if "rest_seconds" in changes and changes["rest_seconds"] is not None:
            if int(changes["rest_seconds"]) < 0:
                raise ValueError("seconds must be non-negative")
        if not await self.store.table("workout_items").update(item_id, changes):
            raise ValueError("item not found")

    async def reorder_items(self, session_id: int, order: List[int]) -> None:
        async with self.store.transaction("rw", ["workout_items"]) as tx:
            items = tx.table("workout_items")
            existing = await items.where(workout_id=session_id).primary_keys()
            if sorted(existing) != sorted(order) or len(set(order)) != len(order):
                raise ValueError("invalid order")
            for position, item_id in enumerate(order):
                await items.update(item_id, {"sort_order": position})

    async def replace_exercise(self, item_id: int, exercise_id: int) -> None:
        """Swap an item's exercise, resetting its sets to the new defaults."""
        async with self.store.transaction(
            "rw", ["workout_items", "workout_sets", "exercises"]
        ) as tx:
            items = tx.table("workout_items")
            item = await items.get(item_id)
            if item is None:
                raise ValueError("item not found")
            duplicate = await items.where(
                workout_id=item["workout_id"], exercise_id=exercise_id
            ).first()
            if duplicate and duplicate["id"] != item_id:
                raise ValueError("exercise already in workout")
            exercise = await tx.table("exercises").get(exercise_id)
            if exercise is None:
                raise ValueError("exercise not found")
            sets = tx.table("workout_sets")
            count = await sets.where(workout_item_id=item_id).count()
            count = count or exercise.get("default_sets") or 3
            await items.update(
                item_id,
                {
                    "exercise_id": exercise_id,
                    "target_sets": exercise.get("default_sets") or count,
                    "target_reps": exercise.get("default_reps"),
                },
            )
            await sets.where(workout_item_id=item_id).delete()
            reps = format_set_value(exercise.get("default_reps"))
            for number in range(1, count + 1):
                await sets.add(
                    {
                        "workout_item_id": item_id,
                        "set_number": number,
                        "weight": "",
                        "reps": reps,
                        "is_warmup": False,
                        "is_complete": False,
                    }
                )


class WorkoutSpaceRepository(BaseRepository):
    """Repository for training spaces ("gyms")."""

    async def list(self) -> List[dict]:
        return await self.store.table("workout_spaces").order_by("name")

    async def get(self, space_id: int) -> Optional[dict]:
        return await self.store.table("workout_spaces").get(space_id)

    async def create(
        self,
        name: str,
        equipment_ids: Iterable[str] | None = None,
        description: str = "",
        is_default: bool = False,
        is_temporary: bool = False,
        expires_at: Optional[str] = None,
    ) -> int:
        now = utc_now()
        async with self.store.transaction("rw", ["workout_spaces"]) as tx:
            space_id = await tx.table("workout_spaces").add(
                {
                    "name": str(name or "").strip() or "New Space",
                    "description": str(description or "").strip(),
                    "equipment_ids": normalize_space_equipment_ids(equipment_ids),
                    "is_default": False,
                    "is_temporary": bool(is_temporary),
                    "expires_at": expires_at or None,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            if is_default:
                await set_default_space(tx, space_id, now)
            return space_id

    async def update(self, space_id: int, **changes: Any) -> None:
        changes = _only(
            changes,
            ("name", "description", "equipment_ids", "is_default", "is_temporary", "expires_at"),
        )
        now = utc_now()
        if "name" in changes:
            changes["name"] = str(changes["name"] or "").strip() or "New Space"
        if "description" in changes:
            changes["description"] = str(changes["description"] or "").strip()
        if "equipment_ids" in changes:
            changes["equipment_ids"] = normalize_space_equipment_ids(changes["equipment_ids"])
        make_default = bool(changes.pop("is_default", False))
        changes["updated_at"] = now
        async with self.store.transaction("rw", ["workout_spaces"]) as tx:
            if not await tx.table("workout_spaces").update(space_id, changes):
                raise ValueError("space not found")
            if make_default:
                await set_default_space(tx, space_id, now)

    async def delete(self, space_id: int) -> None:
        async with self.store.transaction("rw", ["workout_spaces", "settings"]) as tx:
            if await tx.table("workout_spaces").get(space_id) is None:
                raise ValueError("space not found")
            await tx.table("workout_spaces").delete(space_id)
            settings = await tx.table("settings").get(1)
            if settings and settings.get("active_space_id") == space_id:
                await tx.table("settings").update(1, {"active_space_id": None})

    async def duplicate(self, space_id: int) -> int:
        now = utc_now()
        async with self.store.transaction("rw", ["workout_spaces"]) as tx:
            space = await tx.table("workout_spaces").get(space_id)
            if space is None:
                raise ValueError("space not found")
            copy = {k: v for k, v in space.items() if k != "id"}
            name = str(space.get("name") or "Space").strip() or "Space"
            copy.update(
                name=f"{name} Copy",
                is_default=False,
                is_temporary=False,
                expires_at=None,
                created_at=now,
                updated_at=now,
            )
            return await tx.table("workout_spaces").add(copy)

    async def set_default(self, space_id: int) -> None:
        async with self.store.transaction("rw", ["workout_spaces"]) as tx:
            if await tx.table("workout_spaces").get(space_id) is None:
                raise ValueError("space not found")
            await set_default_space(tx, space_id, utc_now())

    async def set_active(self, space_id: Optional[int]) -> None:
        await SettingsRepository(self.store).update(active_space_id=space_id)

    async def resolve_active(self, now: Optional[datetime.datetime] = None) -> Optional[dict]:
        """Active space, else the default, else the first by name; skips expired ones."""
        async with self.store.transaction("r", ["workout_spaces", "settings"]) as tx:
            spaces = await tx.table("workout_spaces").order_by("name")
            settings = await read_settings(tx)
        valid = [s for s in spaces if not is_space_expired(s, now)]
        if not valid:
            return None
        active_id = settings.get("active_space_id")
        for space in valid:
            if active_id is not None and space["id"] == active_id:
                return space
        for space in valid:
            if space.get("is_default"):
                return space
        return valid[0]


_CUSTOM_FIELDS = (
    "name",
    "aliases",
    "primary_muscles",
    "secondary_muscles",
    "instructions",
    "common_mistakes",
    "equipment",
    "category",
    "pattern",
    "default_sets",
    "default_reps",
)


def _custom_fields(values: dict) -> dict:
    fields = {}
    if "name" in values:
        name = _WHITESPACE.sub(" ", str(values["name"] or "")).strip()[:120]
        if not name:
            raise ValueError("name is required")
        fields["name"] = name
    for key in ("aliases", "primary_muscles", "secondary_muscles", "instructions", "common_mistakes"):
        if key in values:
            fields[key] = string_list(values[key])[:12]
    for key in ("category", "pattern"):
        if key in values:
            fields[key] = str(values[key] or "").strip()[:80] or None
    for key in ("default_sets", "default_reps"):
        if key in values and values[key] is not None:
            if int(values[key]) <= 0:
                raise ValueError(f"{key} must be positive")
            fields[key] = int(values[key])
    if "equipment" in values:
        equipment = [e for e in string_list(values["equipment"]) if e in EQUIPMENT_ID_SET]
        fields["equipment"] = equipment
        fields["required_equipment_ids"] = equipment
        fields["optional_equipment_ids"] = []
    return fields


class ExerciseRepository(BaseRepository):
    """Repository for the exercise library."""

    async def list_all(self) -> List[dict]:
        return await self.store.table("exercises").order_by("name")

    async def get(self, exercise_id: int) -> Optional[dict]:
        return await self.store.table("exercises").get(exercise_id)

    async def create_custom(self, name: str, **values: Any) -> int:
        _only(values, _CUSTOM_FIELDS)
        fields = _custom_fields({**values, "name": name})
        if not fields.get("equipment"):
            fields.update(normalize_exercise_equipment({"name": fields["name"]}))
            fields["equipment"] = []
        now = utc_now()
        record = {
            "default_sets": 3,
            "default_reps": 10,
            "aliases": [],
            "primary_muscles": [],
            "secondary_muscles": [],
            "instructions": [],
            "common_mistakes": [],
            "progressions": [],
            "regressions": [],
            "media": {},
            **fields,
            "is_custom": True,
            "status": "user",
            "source": "user",
            "created_at": now,
            "updated_at": now,
        }
        record["muscle_group"] = record["primary_muscles"][0] if record["primary_muscles"] else None
        record["stable_id"] = compute_stable_id(
            record["name"],
            record["equipment"],
            record["primary_muscles"],
            record.get("pattern"),
            record.get("category"),
        )
        async with self.store.transaction("rw", ["exercises"]) as tx:
            exercises = tx.table("exercises")
            base = slugify(record["name"]) or "exercise"
            taken = [
                row["slug"]
                for row in await exercises.to_list()
                if row.get("slug") and (row["slug"] == base or row["slug"].startswith(base + "-"))
            ]
            record["slug"] = unique_slug(base, taken)
            exercise_id = await exercises.add(record)
        logger.info("custom_exercise_created", exercise_id=exercise_id)
        return exercise_id

    async def update_custom(self, exercise_id: int, **values: Any) -> None:
        fields = _custom_fields(_only(values, _CUSTOM_FIELDS))
        async with self.store.transaction("rw", ["exercises"]) as tx:
            existing = await tx.table("exercises").get(exercise_id)
            if existing is None:
                raise ValueError("exercise not found")
            if not existing.get("is_custom"):
                raise ValueError("only custom exercises can be edited")
            if "equipment" in fields and not fields["equipment"]:
                fields.update(
                    normalize_exercise_equipment({"name": fields.get("name", existing["name"])})
                )
            fields["updated_at"] = utc_now()
            await tx.table("exercises").update(exercise_id, fields)

    async def delete(self, exercise_id: int) -> None:
        async with self.store.transaction(
            "rw", ["exercises", "template_items", "workout_items"]
        ) as tx:
            if await tx.table("exercises").get(exercise_id) is None:
                raise ValueError("exercise not found")
            in_templates = await tx.table("template_items").where(exercise_id=exercise_id).count()
            in_workouts = await tx.table("workout_items").where(exercise_id=exercise_id).count()
            if in_templates or in_workouts:
                raise ReferencedExerciseError(
                    f"exercise {exercise_id} is referenced by "
                    f"{in_templates} template items and {in_workouts} workout items"
                )
            await tx.table("exercises").delete(exercise_id)


class EquipmentRepository(BaseRepository):
    """Read access to the static equipment catalog."""

    async def list_all(self) -> List[dict]:
        return await self.store.table("equipment").order_by("name")

    async def bulk_get(self, ids: Iterable[str]) -> List[dict]:
        rows = await self.store.table("equipment").bulk_get(ids)
        return [row for row in rows if row]


class PlannedWorkoutRepository(BaseRepository):
    """Repository for lightweight scheduled workouts."""

    async def add(
        self,
        date: str,
        template_id: Optional[int] = None,
        exercises: Optional[list] = None,
        source: str = "user",
    ) -> int:
        datetime.date.fromisoformat(date)
        now = utc_now()
        return await self.store.table("planned_workouts").add(
            {
                "date": date,
                "template_id": template_id,
                "exercises": exercises,
                "source": source or "user",
                "created_at": now,
                "updated_at": now,
            }
        )

    async def list(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> List[dict]:
        rows = await self.store.table("planned_workouts").order_by("date")
        if start_date:
            rows = [r for r in rows if r["date"] >= start_date]
        if end_date:
            rows = [r for r in rows if r["date"] <= end_date]
        return rows

    async def get(self, plan_id: int) -> Optional[dict]:
        return await self.store.table("planned_workouts").get(plan_id)

    async def delete(self, plan_id: int) -> None:
        table = self.store.table("planned_workouts")
        if await table.get(plan_id) is None:
            raise ValueError("planned workout not found")
        await table.delete(plan_id)


class SettingsRepository(BaseRepository):
    """The single settings row."""

    _FIELDS = ("api_key", "coach_persona", "rest_enabled", "rest_default_seconds", "active_space_id")

    async def get(self) -> dict:
        async with self.store.transaction("rw", ["settings"]) as tx:
            row = await tx.table("settings").get(1)
            if row is None:
                row = {
                    "id": 1,
                    "rest_enabled": True,
                    "rest_default_seconds": DEFAULT_REST_SECONDS,
                }
                await tx.table("settings").put(row)
                row = await tx.table("settings").get(1)
            return row

    async def update(self, **changes: Any) -> None:
        changes = _only(changes, self._FIELDS)
        if "rest_default_seconds" in changes:
            seconds = int(changes["rest_default_seconds"])
            if seconds < 0:
                raise ValueError("seconds must be non-negative")
            changes["rest_default_seconds"] = seconds
        async with self.store.transaction("rw", ["settings"]):
            await self.get()
            await self.store.table("settings").update(1, changes)

    async def rest_defaults(self) -> dict:
        settings = await self.get()
        enabled = settings.get("rest_enabled")
        return {
            "rest_enabled": True if enabled is None else bool(enabled),
            "rest_default_seconds": rest_seconds_from(settings),
        }

    async def active_space_id(self) -> Optional[int]:
        return (await self.get()).get("active_space_id")


_LEGACY_FIELDS = ("id", "started_at", "finished_at", "template_id")


class LegacyWorkoutView:
    """Legacy ``workouts`` row shape served from the canonical sessions."""

    def __init__(self, store: Store) -> None:
        self.store = store

    @staticmethod
    def _legacy(session: dict) -> dict:
        return {key: session.get(key) for key in _LEGACY_FIELDS}

    async def get(self, workout_id: int) -> Optional[dict]:
        session = await self.store.table("workout_sessions").get(workout_id)
        return self._legacy(session) if session else None

    async def list(self) -> List[dict]:
        sessions = await self.store.table("workout_sessions").order_by("started_at", reverse=True)
        return [self._legacy(s) for s in sessions]
