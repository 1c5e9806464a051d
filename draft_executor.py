"""Commit validated action drafts as store rows, one transaction per draft."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

import structlog

from action_drafts import DraftKind, DraftValidation, NormalizedDraft
from db import disambiguate_name, read_settings, rest_seconds_from, set_default_space
from equipment import normalize_space_equipment_ids
from errors import DraftRejectedError, StaleReferenceError
from store import Store, Transaction, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class DraftExecutionResult:
    kind: str
    id: int
    name: str

    def to_dict(self) -> dict:
        return {"kind": self.kind, "id": self.id, "name": self.name}


def _base_name(draft: NormalizedDraft, fallback: str) -> str:
    return (draft.requested_name or draft.name).strip() or fallback


class DraftExecutor:
    """Turns normalized drafts into workouts, templates and gyms."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def _check_references(self, tx: Transaction, draft: NormalizedDraft) -> None:
        missing: dict[str, list] = {}
        ids = [entry.exercise_id for entry in draft.exercises]
        found = await tx.table("exercises").bulk_get(ids)
        gone = [i for i, row in zip(ids, found) if row is None]
        if gone:
            missing["exercises"] = list(dict.fromkeys(gone))
        if draft.gym_id is not None and await tx.table("workout_spaces").get(draft.gym_id) is None:
            missing["workout_spaces"] = [draft.gym_id]
        if missing:
            logger.warning("stale_reference_detected", kind=draft.kind.value, missing=missing)
            raise StaleReferenceError(
                f"references vanished before commit: {missing}", missing=missing
            )

    async def create_workout_from_draft(self, draft: NormalizedDraft) -> DraftExecutionResult:
        tables = [
            "workout_sessions",
            "workout_items",
            "workout_sets",
            "exercises",
            "workout_spaces",
            "settings",
        ]
        async with self.store.transaction("rw", tables) as tx:
            await self._check_references(tx, draft)
            rest = rest_seconds_from(await read_settings(tx))
            session_id = await tx.table("workout_sessions").add(
                {
                    "started_at": utc_now(),
                    "finished_at": None,
                    "template_id": None,
                    "space_id": draft.gym_id,
                    "session_note": draft.name,
                    "session_reflection": "",
                    "exercise_notes": {},
                }
            )
            for position, entry in enumerate(draft.exercises):
                item_id = await tx.table("workout_items").add(
                    {
                        "workout_id": session_id,
                        "exercise_id": entry.exercise_id,
                        "sort_order": position,
                        "target_sets": entry.target_sets,
                        "target_reps": entry.target_reps,
                        "rest_seconds": rest,
                        "notes": entry.notes,
                    }
                )
                for number, workout_set in enumerate(entry.sets, 1):
                    await tx.table("workout_sets").add(
                        {
                            "workout_item_id": item_id,
                            "set_number": number,
                            "weight": workout_set.weight,
                            "reps": workout_set.reps,
                            "is_warmup": False,
                            "is_complete": False,
                        }
                    )
        return self._done(draft, session_id, draft.name)

    async def create_template_from_draft(self, draft: NormalizedDraft) -> DraftExecutionResult:
        now = utc_now()
        tables = ["templates", "template_items", "exercises", "workout_spaces"]
        async with self.store.transaction("rw", tables) as tx:
            await self._check_references(tx, draft)
            names = [t.get("name") or "" for t in await tx.table("templates").to_list()]
            name = disambiguate_name(_base_name(draft, "Untitled Template"), names)
            template_id = await tx.table("templates").add(
                {"name": name, "space_id": draft.gym_id, "created_at": now, "updated_at": now}
            )
            for position, entry in enumerate(draft.exercises):
                await tx.table("template_items").add(
                    {
                        "template_id": template_id,
                        "exercise_id": entry.exercise_id,
                        "sort_order": position,
                        "target_sets": entry.target_sets,
                        "target_reps": entry.target_reps,
                        "notes": entry.notes,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
        return self._done(draft, template_id, name)

    async def create_gym_from_draft(self, draft: NormalizedDraft) -> DraftExecutionResult:
        now = utc_now()
        async with self.store.transaction("rw", ["workout_spaces", "equipment"]) as tx:
            spaces = tx.table("workout_spaces")
            names = [s.get("name") or "" for s in await spaces.to_list()]
            name = disambiguate_name(_base_name(draft, "New Space"), names)
            known = await tx.table("equipment").to_collection().primary_keys()
            space_id = await spaces.add(
                {
                    "name": name,
                    "description": draft.description,
                    "equipment_ids": normalize_space_equipment_ids(draft.equipment_ids, known),
                    "is_default": False,
                    "is_temporary": False,
                    "expires_at": None,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            if draft.is_default:
                await set_default_space(tx, space_id, now)
        return self._done(draft, space_id, name)

    def _done(self, draft: NormalizedDraft, row_id: int, name: str) -> DraftExecutionResult:
        logger.info("draft_executed", kind=draft.kind.value, id=row_id, name=name)
        return DraftExecutionResult(draft.kind.value, row_id, name)

    async def execute(
        self, draft: Optional[Union[NormalizedDraft, DraftValidation]]
    ) -> DraftExecutionResult:
        if isinstance(draft, DraftValidation):
            if not draft.valid:
                raise DraftRejectedError("; ".join(draft.error_messages))
            draft = draft.normalized_draft
        if draft is None:
            raise DraftRejectedError("no action draft provided")
        if draft.kind is DraftKind.CREATE_WORKOUT:
            return await self.create_workout_from_draft(draft)
        if draft.kind is DraftKind.CREATE_TEMPLATE:
            return await self.create_template_from_draft(draft)
        if draft.kind is DraftKind.CREATE_GYM:
            return await self.create_gym_from_draft(draft)
        raise DraftRejectedError(f"unsupported draft kind {draft.kind!r}")
