from __future__ import annotations

from typing import Iterable, List, Optional

EQUIPMENT_CATALOG = [
    {"id": "bodyweight", "name": "Bodyweight", "category": "bodyweight", "aliases": ["bodyweight", "body weight"], "is_portable": True},
    {"id": "barbell", "name": "Barbell", "category": "free_weights", "aliases": ["barbell"], "is_portable": False},
    {"id": "dumbbell", "name": "Dumbbell", "category": "free_weights", "aliases": ["dumbbell", "db"], "is_portable": True},
    {"id": "ez_bar", "name": "EZ Bar", "category": "free_weights", "aliases": ["ez bar", "curl bar"], "is_portable": False},
    {"id": "trap_bar", "name": "Trap Bar", "category": "free_weights", "aliases": ["trap bar", "hex bar"], "is_portable": False},
    {"id": "bench", "name": "Bench", "category": "accessory", "aliases": ["bench"], "is_portable": False},
    {"id": "squat_rack", "name": "Squat Rack", "category": "accessory", "aliases": ["rack", "squat rack", "power rack"], "is_portable": False},
    {"id": "cable_machine", "name": "Cable Machine", "category": "machine", "aliases": ["cable", "cable machine"], "is_portable": False},
    {"id": "lat_pulldown_machine", "name": "Lat Pulldown Machine", "category": "machine", "aliases": ["lat pulldown"], "is_portable": False},
    {"id": "leg_press_machine", "name": "Leg Press Machine", "category": "machine", "aliases": ["leg press"], "is_portable": False},
    {"id": "leg_extension_machine", "name": "Leg Extension Machine", "category": "machine", "aliases": ["leg extension"], "is_portable": False},
    {"id": "leg_curl_machine", "name": "Leg Curl Machine", "category": "machine", "aliases": ["leg curl"], "is_portable": False},
    {"id": "calf_raise_machine", "name": "Calf Raise Machine", "category": "machine", "aliases": ["calf raise"], "is_portable": False},
    {"id": "pullup_bar", "name": "Pull-up Bar", "category": "accessory", "aliases": ["pull-up bar", "pull up bar"], "is_portable": True},
    {"id": "dip_station", "name": "Dip Station", "category": "accessory", "aliases": ["dip station", "dip bar"], "is_portable": True},
    {"id": "treadmill", "name": "Treadmill", "category": "cardio", "aliases": ["treadmill"], "is_portable": False},
    {"id": "stationary_bike", "name": "Stationary Bike", "category": "cardio", "aliases": ["bike", "stationary bike"], "is_portable": False},
    {"id": "rower", "name": "Rowing Machine", "category": "cardio", "aliases": ["rower", "rowing machine"], "is_portable": False},
]

EQUIPMENT_IDS = [item["id"] for item in EQUIPMENT_CATALOG]
EQUIPMENT_ID_SET = frozenset(EQUIPMENT_IDS)
_EQUIPMENT_ORDER = {eid: i for i, eid in enumerate(EQUIPMENT_IDS)}

# Exact-name overrides win over keyword inference.
NAME_OVERRIDES = {
    "bench press": (["barbell", "bench"], []),
    "overhead press": (["barbell"], []),
    "hip thrust": (["barbell"], ["bench"]),
    "goblet squat": (["dumbbell"], []),
    "bulgarian split squat": (["bodyweight"], ["bench", "dumbbell"]),
    "walking lunges": (["bodyweight"], ["dumbbell"]),
    "push up": (["bodyweight"], []),
    "plank": (["bodyweight"], []),
    "pull up": (["pullup_bar"], []),
    "hanging knee raise": (["pullup_bar"], []),
    "dips": (["dip_station"], []),
    "running": (["bodyweight"], ["treadmill"]),
    "cycling": (["stationary_bike"], []),
    "rowing machine": (["rower"], []),
    "lat pulldown": (["lat_pulldown_machine"], []),
    "leg press": (["leg_press_machine"], []),
    "leg extension": (["leg_extension_machine"], []),
    "leg curl": (["leg_curl_machine"], []),
    "standing calf raise": (["calf_raise_machine"], []),
}

# Keyword equivalence classes: every phrase in a class implies the same
# equipment. Rows are evaluated top to bottom; the row order is the
# priority order of the resulting id list.
KEYWORD_RULES = [
    (("barbell",), "barbell", "required"),
    (("trap bar", "hex bar"), "trap_bar", "required"),
    (("ez bar", "curl bar"), "ez_bar", "required"),
    (("dumbbell", "kettlebell"), "dumbbell", "required"),
    (("cable",), "cable_machine", "required"),
    (("lat pulldown",), "lat_pulldown_machine", "required"),
    (("leg press",), "leg_press_machine", "required"),
    (("leg extension",), "leg_extension_machine", "required"),
    (("leg curl",), "leg_curl_machine", "required"),
    (("calf raise",), "calf_raise_machine", "required"),
    (("pull up", "pull-up", "hanging"), "pullup_bar", "required"),
    (("dip",), "dip_station", "required"),
    (("rowing machine", "rower"), "rower", "required"),
    (("cycling", "bike"), "stationary_bike", "required"),
    (("running",), "treadmill", "optional"),
    (("bench press", "dumbbell bench", "incline", "chest fly"), "bench", "required"),
]

EQUIPMENT_FALLBACKS = {
    "trap_bar": ["barbell", "dumbbell", "bodyweight"],
    "barbell": ["dumbbell", "bodyweight"],
    "ez_bar": ["dumbbell", "bodyweight"],
    "dumbbell": ["bodyweight"],
    "cable_machine": ["dumbbell", "bodyweight"],
    "lat_pulldown_machine": ["pullup_bar", "bodyweight"],
    "leg_press_machine": ["bodyweight"],
    "leg_extension_machine": ["bodyweight"],
    "leg_curl_machine": ["bodyweight"],
    "calf_raise_machine": ["bodyweight"],
    "pullup_bar": ["bodyweight"],
    "dip_station": ["bodyweight"],
    "rower": ["treadmill", "bodyweight"],
    "stationary_bike": ["treadmill", "bodyweight"],
    "treadmill": ["bodyweight"],
}


def infer_exercise_equipment(exercise: dict) -> dict:
    """Guess required and optional equipment ids from an exercise name."""
    lowered = str(exercise.get("name") or "").strip().lower()
    if not lowered:
        return {"required_equipment_ids": [], "optional_equipment_ids": []}
    if lowered in NAME_OVERRIDES:
        required, optional = NAME_OVERRIDES[lowered]
        return {
            "required_equipment_ids": list(required),
            "optional_equipment_ids": list(optional),
        }
    found: dict[str, list[str]] = {"required": [], "optional": []}
    for phrases, equipment_id, role in KEYWORD_RULES:
        if any(phrase in lowered for phrase in phrases):
            if equipment_id not in found[role]:
                found[role].append(equipment_id)
    if not found["required"]:
        found["required"].append("bodyweight")
    return {
        "required_equipment_ids": found["required"],
        "optional_equipment_ids": found["optional"],
    }


def sort_equipment_ids(ids: Iterable[str]) -> List[str]:
    unique = list(dict.fromkeys(i for i in ids if i))
    return sorted(unique, key=lambda eid: _EQUIPMENT_ORDER.get(eid, 999))


def normalize_space_equipment_ids(
    equipment_ids: Iterable[str] | None, known_ids: Iterable[str] = EQUIPMENT_ID_SET
) -> List[str]:
    """Filter to known ids and always include bodyweight."""
    known = set(known_ids)
    ids = list(equipment_ids or [])
    if "bodyweight" not in ids:
        ids.append("bodyweight")
    return sort_equipment_ids(i for i in ids if i in known)


def normalize_exercise_equipment(
    exercise: dict, known_ids: Iterable[str] = EQUIPMENT_ID_SET
) -> dict:
    known = set(known_ids)
    required = exercise.get("required_equipment_ids") or []
    optional = exercise.get("optional_equipment_ids")
    if not required or optional is None:
        inferred = infer_exercise_equipment(exercise)
        if not required:
            required = inferred["required_equipment_ids"]
        if optional is None:
            optional = inferred["optional_equipment_ids"]
    return {
        "required_equipment_ids": sort_equipment_ids(i for i in required if i in known),
        "optional_equipment_ids": sort_equipment_ids(i for i in optional if i in known),
    }


def missing_equipment_ids(
    exercise: dict,
    space_equipment_ids: Iterable[str] | None,
    known_ids: Iterable[str] = EQUIPMENT_ID_SET,
) -> List[str]:
    known = set(known_ids)
    required = normalize_exercise_equipment(exercise, known)["required_equipment_ids"]
    available = set(normalize_space_equipment_ids(space_equipment_ids, known))
    return [eid for eid in required if eid not in available]


def is_exercise_available(
    exercise: dict,
    space_equipment_ids: Iterable[str] | None,
    known_ids: Iterable[str] = EQUIPMENT_ID_SET,
) -> bool:
    return not missing_equipment_ids(exercise, space_equipment_ids, known_ids)


def _primary_equipment_id(required: List[str]) -> Optional[str]:
    for eid in required:
        if eid != "bodyweight":
            return eid
    return required[0] if required else None


def exercise_substitutions(
    exercise: dict,
    all_exercises: List[dict],
    space_equipment_ids: Iterable[str] | None,
    equipment: List[dict] | None = None,
) -> List[dict]:
    """Suggest one alternative per fallback equipment the space offers."""
    equipment_map = {item["id"]: item for item in (equipment or EQUIPMENT_CATALOG)}
    known = set(equipment_map)
    required = normalize_exercise_equipment(exercise, known)["required_equipment_ids"]
    primary = _primary_equipment_id(required)
    if primary is None:
        return []
    space_ids = normalize_space_equipment_ids(space_equipment_ids, known)
    group = str(exercise.get("muscle_group") or "").lower()
    substitutions: List[dict] = []
    for equipment_id in EQUIPMENT_FALLBACKS.get(primary, []):
        matches = []
        for candidate in all_exercises:
            if candidate.get("id") == exercise.get("id"):
                continue
            cand_required = normalize_exercise_equipment(candidate, known)[
                "required_equipment_ids"
            ]
            if equipment_id == "bodyweight":
                if cand_required and "bodyweight" not in cand_required:
                    continue
            elif equipment_id not in cand_required:
                continue
            if is_exercise_available(candidate, space_ids, known):
                matches.append(candidate)
        if not matches:
            continue
        same_group = [m for m in matches if str(m.get("muscle_group") or "").lower() == group]
        pick = sorted(same_group or matches, key=lambda m: str(m.get("name") or ""))[0]
        if any(s["exercise_id"] == pick["id"] for s in substitutions):
            continue
        label = equipment_map.get(equipment_id, {}).get("name", equipment_id)
        substitutions.append(
            {
                "exercise_id": pick["id"],
                "name": pick.get("name") or "Unknown Exercise",
                "equipment_id": equipment_id,
                "reason": f"Uses {label}",
            }
        )
    return substitutions
