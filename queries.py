"""Read-side joins and aggregates over the planner store.

Every function reads one snapshot inside a single read transaction and
uses batch lookups keyed by id. Order is always applied explicitly.
"""
from __future__ import annotations

from typing import Iterable, List, Optional

from store import Store

_SESSION_READ = ["workout_sessions", "workout_items", "workout_sets", "exercises"]


def _is_finished(session: dict) -> bool:
    return session.get("finished_at") not in (None, "")


def _by_id(rows: Iterable[Optional[dict]]) -> dict:
    return {row["id"]: row for row in rows if row}


def _by_finished_desc(sessions: List[dict]) -> List[dict]:
    return sorted(
        sessions,
        key=lambda s: (str(s.get("finished_at") or ""), s["id"]),
        reverse=True,
    )


async def get_template_with_details(store: Store, template_id: int) -> Optional[dict]:
    """``{"template": ..., "items": [...]}`` with each item's exercise attached."""
    async with store.transaction("r", ["templates", "template_items", "exercises"]) as tx:
        template = await tx.table("templates").get(template_id)
        if template is None:
            return None
        items = await tx.table("template_items").where(template_id=template_id).sort_by(
            "sort_order"
        )
        exercises = _by_id(await tx.table("exercises").bulk_get(i["exercise_id"] for i in items))
    return {
        "template": template,
        "items": [{**item, "exercise": exercises.get(item["exercise_id"])} for item in items],
    }


async def get_workout_with_details(store: Store, workout_id: int) -> Optional[dict]:
    """``{"workout": ..., "items": [...]}``; items carry their exercise and sets."""
    async with store.transaction("r", _SESSION_READ) as tx:
        workout = await tx.table("workout_sessions").get(workout_id)
        if workout is None:
            return None
        items = await tx.table("workout_items").where(workout_id=workout_id).sort_by("sort_order")
        exercises = _by_id(await tx.table("exercises").bulk_get(i["exercise_id"] for i in items))
        sets = await tx.table("workout_sets").where_in(
            "workout_item_id", [i["id"] for i in items]
        ).sort_by("set_number")
    workout = {
        **workout,
        "session_note": workout.get("session_note") or "",
        "exercise_notes": workout.get("exercise_notes") or {},
    }
    sets_by_item: dict[int, list] = {}
    for row in sets:
        sets_by_item.setdefault(row["workout_item_id"], []).append(row)
    return {
        "workout": workout,
        "items": [
            {
                **item,
                "exercise": exercises.get(item["exercise_id"]),
                "sets": sets_by_item.get(item["id"], []),
            }
            for item in items
        ],
    }


async def list_finished_workouts(store: Store) -> List[dict]:
    """Finished sessions, most recently finished first."""
    sessions = await store.table("workout_sessions").to_list()
    return _by_finished_desc([s for s in sessions if _is_finished(s)])


async def list_recent_sessions(store: Store, limit: Optional[int] = 10) -> List[dict]:
    sessions = await store.table("workout_sessions").order_by("started_at", reverse=True)
    if limit is None:
        return sessions
    return sessions[: max(0, limit)]


async def get_most_recent_active_workout_id(store: Store) -> Optional[int]:
    active = await store.table("workout_sessions").where(finished_at=None).to_list()
    active += await store.table("workout_sessions").where(finished_at="").to_list()
    if not active:
        return None
    active.sort(key=lambda s: (str(s.get("started_at") or ""), s["id"]), reverse=True)
    return active[0]["id"]


async def _finished_items(store: Store) -> tuple[List[dict], List[dict]]:
    async with store.transaction("r", ["workout_sessions", "workout_items"]) as tx:
        sessions = await tx.table("workout_sessions").to_list()
        finished = _by_finished_desc([s for s in sessions if _is_finished(s)])
        items = await tx.table("workout_items").where_in(
            "workout_id", [s["id"] for s in finished]
        ).to_list()
    return finished, items


async def get_exercise_usage_counts(store: Store) -> List[dict]:
    """How many workout items in finished sessions use each exercise."""
    _, items = await _finished_items(store)
    counts: dict[int, int] = {}
    for item in items:
        if item.get("exercise_id") is None:
            continue
        counts[item["exercise_id"]] = counts.get(item["exercise_id"], 0) + 1
    return [
        {"exercise_id": exercise_id, "count": count}
        for exercise_id, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    ]


async def get_exercise_usage_stats(store: Store) -> List[dict]:
    """Usage counts plus when each exercise was last performed."""
    finished, items = await _finished_items(store)
    finished_at = {s["id"]: s.get("finished_at") for s in finished}
    stats: dict[int, dict] = {}
    for item in items:
        exercise_id = item.get("exercise_id")
        if exercise_id is None:
            continue
        entry = stats.setdefault(
            exercise_id, {"exercise_id": exercise_id, "count": 0, "last_performed": None}
        )
        entry["count"] += 1
        when = finished_at.get(item["workout_id"])
        if when and (entry["last_performed"] is None or when > entry["last_performed"]):
            entry["last_performed"] = when
    return sorted(stats.values(), key=lambda e: (-e["count"], e["exercise_id"]))


async def get_previous_sets_by_exercise(
    store: Store, exercise_ids: Iterable[int], exclude_workout_id: Optional[int] = None
) -> dict[int, dict]:
    """Most recent finished performance of each requested exercise.

    Sessions are scanned newest first and the scan stops once every
    requested exercise has been found.
    """
    wanted = list(dict.fromkeys(i for i in exercise_ids if i is not None))
    if not wanted:
        return {}
    async with store.transaction("r", ["workout_sessions", "workout_items", "workout_sets"]) as tx:
        sessions = await tx.table("workout_sessions").to_list()
        finished = _by_finished_desc(
            [s for s in sessions if _is_finished(s) and s["id"] != exclude_workout_id]
        )
        items = await tx.table("workout_items").where_in("exercise_id", wanted).to_list()
        items_by_session: dict[int, list] = {}
        for item in items:
            items_by_session.setdefault(item["workout_id"], []).append(item)

        found: dict[int, dict] = {}
        chosen: dict[int, dict] = {}
        remaining = set(wanted)
        for session in finished:
            for item in sorted(items_by_session.get(session["id"], []), key=lambda i: i["sort_order"] or 0):
                if item["exercise_id"] in remaining:
                    remaining.discard(item["exercise_id"])
                    chosen[item["id"]] = item
                    found[item["exercise_id"]] = {
                        "workout_id": session["id"],
                        "finished_at": session.get("finished_at"),
                        "workout_item_id": item["id"],
                        "sets": [],
                    }
            if not remaining:
                break

        sets = await tx.table("workout_sets").where_in("workout_item_id", list(chosen)).sort_by(
            "set_number"
        )
    for row in sets:
        item = chosen[row["workout_item_id"]]
        found[item["exercise_id"]]["sets"].append(row)
    return found


async def get_exercise_history(
    store: Store, exercise_id: int, limit: Optional[int] = None
) -> List[dict]:
    """Every finished performance of one exercise, newest first."""
    async with store.transaction("r", ["workout_sessions", "workout_items", "workout_sets"]) as tx:
        items = await tx.table("workout_items").where(exercise_id=exercise_id).to_list()
        sessions = _by_id(await tx.table("workout_sessions").bulk_get(i["workout_id"] for i in items))
        entries = []
        for item in items:
            session = sessions.get(item["workout_id"])
            if session and _is_finished(session):
                entries.append((session, item))
        entries.sort(key=lambda e: (str(e[0].get("finished_at")), e[0]["id"]), reverse=True)
        if limit is not None:
            entries = entries[: max(0, limit)]
        sets = await tx.table("workout_sets").where_in(
            "workout_item_id", [item["id"] for _, item in entries]
        ).sort_by("set_number")
    sets_by_item: dict[int, list] = {}
    for row in sets:
        sets_by_item.setdefault(row["workout_item_id"], []).append(row)
    return [
        {
            "workout_id": session["id"],
            "started_at": session.get("started_at"),
            "finished_at": session.get("finished_at"),
            "sets": sets_by_item.get(item["id"], []),
        }
        for session, item in entries
    ]
