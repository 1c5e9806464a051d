"""Assistant action draft contract and validation.

The assistant proposes one of three actions (create a workout, a template
or a gym) as JSON. ``parse_action_draft_message`` pulls the contract out
of a chat reply and ``validate_action_draft`` checks it against a read
snapshot of the store, producing a normalized draft for the executor.
"""
from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from db import disambiguate_name, format_set_value
from equipment import normalize_space_equipment_ids
from exercise_resolver import (
    DRAFT_POLICY,
    Resolution,
    ResolutionStatus,
    ResolverPolicy,
    Suggestion,
    resolve,
)
from store import Store

CONTRACT_VERSION = "coach_action_v1"


class DraftKind(str, Enum):
    CREATE_WORKOUT = "create_workout"
    CREATE_TEMPLATE = "create_template"
    CREATE_GYM = "create_gym"


class _ContractModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class DraftSet(_ContractModel):
    reps: Optional[Union[float, str]] = None
    weight: Optional[Union[float, str]] = None
    duration: Optional[Union[float, str]] = None
    rpe: Optional[Union[float, str]] = None

    @field_validator("reps", "weight", "duration", "rpe", mode="before")
    @classmethod
    def keep_scalars(cls, value: Any) -> Any:
        # Non-scalar values are dropped later like any other unparseable value.
        if value is None or isinstance(value, (int, float, str)):
            return value
        return str(value)


class DraftExercise(_ContractModel):
    exercise_id: Optional[int] = Field(None, alias="exerciseId")
    name: Optional[str] = None
    sets: Optional[Union[List[DraftSet], Annotated[int, Field(ge=0)]]] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def require_id_or_name(self) -> "DraftExercise":
        if self.exercise_id is None and not (self.name or "").strip():
            raise ValueError("Each exercise needs an exerciseId or a name.")
        return self


class DraftSuggestion(_ContractModel):
    exercise_id: PositiveInt = Field(alias="exerciseId")
    name: str = Field(min_length=1)


class NeedsReviewEntry(_ContractModel):
    requested_name: str = Field(min_length=1, alias="requestedName")
    suggestions: List[DraftSuggestion] = Field(default_factory=list, max_length=5)


class _ExercisePayload(_ContractModel):
    name: Optional[str] = None
    title: Optional[str] = None
    gym_id: Optional[PositiveInt] = Field(None, alias="gymId")
    exercises: List[DraftExercise] = Field(default_factory=list)
    needs_review: List[NeedsReviewEntry] = Field(default_factory=list, alias="needsReview")

    @model_validator(mode="after")
    def require_content(self) -> "_ExercisePayload":
        if not self.exercises and not self.needs_review:
            raise ValueError("Draft requires exercises or needsReview.")
        return self


class WorkoutPayload(_ExercisePayload):
    planned_duration_mins: Optional[float] = Field(None, alias="plannedDurationMins")


class TemplatePayload(_ExercisePayload):
    frequency_hint: Optional[str] = Field(None, alias="frequencyHint")


class GymPayload(_ContractModel):
    name: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    equipment_ids: List[str] = Field(default_factory=list, alias="equipmentIds")
    is_default: bool = Field(False, alias="isDefault")


class _DraftBase(_ContractModel):
    confidence: float = Field(ge=0, le=1)
    risk: Literal["low", "medium", "high"]
    title: str = Field(min_length=1)
    summary: str = Field(min_length=1)


class CreateWorkoutDraft(_DraftBase):
    kind: Literal["create_workout"]
    payload: WorkoutPayload


class CreateTemplateDraft(_DraftBase):
    kind: Literal["create_template"]
    payload: TemplatePayload


class CreateGymDraft(_DraftBase):
    kind: Literal["create_gym"]
    payload: GymPayload


ActionDraft = Annotated[
    Union[CreateWorkoutDraft, CreateTemplateDraft, CreateGymDraft],
    Field(discriminator="kind"),
]
_DRAFT_ADAPTER = TypeAdapter(ActionDraft)


class ActionDraftContract(_ContractModel):
    contract_version: Literal["coach_action_v1"] = Field(alias="contractVersion")
    assistant_text: str = Field(min_length=1, alias="assistantText")
    action_draft: Optional[ActionDraft] = Field(None, alias="actionDraft")


def parse_action_draft(data: Any):
    """Validate raw draft data; raises ``pydantic.ValidationError``."""
    return _DRAFT_ADAPTER.validate_python(data)


# Union branch labels pydantic inserts into error locations.
_UNION_TAG = re.compile(r"^(?:[a-z-]+\[.*\]|constrained-\w+|int|float|str|bool|none)$")


def format_validation_errors(exc: ValidationError) -> List[str]:
    messages: List[str] = []
    for error in exc.errors():
        loc = ".".join(
            str(part)
            for part in error.get("loc", ())
            if not (isinstance(part, str) and _UNION_TAG.match(part))
        )
        msg = str(error.get("msg", "Invalid value.")).removeprefix("Value error, ")
        message = f"{loc}: {msg}" if loc else msg
        if message not in messages:
            messages.append(message)
    return messages or ["Invalid action draft."]


@dataclass
class ParsedMessage:
    assistant_text: str
    action_draft: Any = None
    contract_version: Optional[str] = None
    parse_errors: List[str] = field(default_factory=list)


_FENCED = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def _try_contract(raw: str, errors: List[str]) -> Optional[ActionDraftContract]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        errors.append("Unable to parse action draft JSON.")
        return None
    try:
        return ActionDraftContract.model_validate(data)
    except ValidationError as exc:
        errors.append(
            "Invalid action draft contract: " + "; ".join(format_validation_errors(exc))
        )
        return None


def parse_action_draft_message(text: Any) -> ParsedMessage:
    """Find a ``coach_action_v1`` contract in fenced JSON or a bare object."""
    text = text if isinstance(text, str) else ""
    errors: List[str] = []
    blocks = _FENCED.findall(text)
    candidates = blocks
    if not blocks:
        trimmed = text.strip()
        candidates = [trimmed] if trimmed.startswith("{") and trimmed.endswith("}") else []
    for raw in candidates:
        contract = _try_contract(raw, errors)
        if contract is not None:
            return ParsedMessage(
                contract.assistant_text, contract.action_draft, contract.contract_version
            )
    fallback = _FENCED.sub("", text).strip() or text.strip()
    return ParsedMessage(fallback, parse_errors=errors)


# --------------------
# Validation
# --------------------


@dataclass
class DraftIssue:
    kind: str
    message: str

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


@dataclass
class NormalizedSet:
    reps: str = ""
    weight: str = ""


@dataclass
class NormalizedExercise:
    exercise_id: int
    sets: List[NormalizedSet]
    target_sets: int
    target_reps: Optional[int]
    notes: str = ""


@dataclass
class NormalizedDraft:
    kind: DraftKind
    title: str
    summary: str
    confidence: float
    risk: str
    name: str
    # Name as asked for, before collision suffixes; the executor re-checks it.
    requested_name: str = ""
    gym_id: Optional[int] = None
    exercises: List[NormalizedExercise] = field(default_factory=list)
    equipment_ids: List[str] = field(default_factory=list)
    is_default: bool = False
    description: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass
class DraftValidation:
    valid: bool
    errors: List[DraftIssue] = field(default_factory=list)
    warnings: List[DraftIssue] = field(default_factory=list)
    normalized_draft: Optional[NormalizedDraft] = None
    needs_review: List[Resolution] = field(default_factory=list)

    @property
    def error_messages(self) -> List[str]:
        return [issue.message for issue in self.errors]

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "normalized_draft": self.normalized_draft.to_dict() if self.normalized_draft else None,
            "needs_review": [r.to_dict() for r in self.needs_review],
        }


def _text(value: Any) -> str:
    return str(value if value is not None else "").strip()


def _reps_number(value: str) -> Optional[int]:
    if not value:
        return None
    number = float(value)
    return int(number) if number.is_integer() else None


def _set_value(value: Any, dropped: List[str]) -> str:
    """Numeric text for ``value``; unparseable input is recorded and left blank."""
    try:
        return format_set_value(value)
    except ValueError:
        dropped.append(str(value))
        return ""


def _normalize_sets(entry: DraftExercise, exercise: dict, dropped: List[str]) -> List[NormalizedSet]:
    default_reps = format_set_value(exercise.get("default_reps"))
    if isinstance(entry.sets, list) and entry.sets:
        return [
            NormalizedSet(reps=_set_value(s.reps, dropped), weight=_set_value(s.weight, dropped))
            for s in entry.sets
        ]
    if isinstance(entry.sets, int) and entry.sets > 0:
        count = entry.sets
    else:
        count = int(exercise.get("default_sets") or 3)
    return [NormalizedSet(reps=default_reps) for _ in range(count)]


def _normalize_exercise(
    entry: DraftExercise, exercise_id: int, exercise: dict, dropped: List[str]
) -> NormalizedExercise:
    sets = _normalize_sets(entry, exercise, dropped)
    target_reps = next((_reps_number(s.reps) for s in sets if s.reps), None)
    if target_reps is None:
        target_reps = exercise.get("default_reps")
    return NormalizedExercise(
        exercise_id=exercise_id,
        sets=sets,
        target_sets=len(sets),
        target_reps=target_reps,
        notes=_text(entry.notes),
    )


def _review_from_payload(entry: NeedsReviewEntry) -> Resolution:
    return Resolution(
        status=ResolutionStatus.NEEDS_REVIEW,
        requested_name=entry.requested_name,
        suggestions=[Suggestion(s.exercise_id, s.name, 0.0) for s in entry.suggestions],
    )


async def _snapshot(store: Store) -> dict:
    async with store.transaction(
        "r", ["exercises", "workout_spaces", "templates", "equipment"]
    ) as tx:
        return {
            "exercises": await tx.table("exercises").to_list(),
            "spaces": await tx.table("workout_spaces").to_list(),
            "templates": await tx.table("templates").to_list(),
            "equipment": await tx.table("equipment").to_list(),
        }


async def validate_action_draft(
    store: Store,
    draft: Any,
    default_gym_id: Optional[int] = None,
    policy: ResolverPolicy = DRAFT_POLICY,
) -> DraftValidation:
    """Check a draft against the current store without writing anything.

    ``draft`` may be a model, a mapping, or the raw JSON text of a tool call.
    """
    if isinstance(draft, (str, bytes)):
        try:
            draft = json.loads(draft)
        except json.JSONDecodeError:
            return DraftValidation(
                valid=False,
                errors=[DraftIssue("validation", "Unable to parse action draft JSON.")],
            )
    try:
        parsed = draft if isinstance(draft, _DraftBase) else parse_action_draft(draft)
    except ValidationError as exc:
        return DraftValidation(
            valid=False,
            errors=[DraftIssue("validation", m) for m in format_validation_errors(exc)],
        )

    snapshot = await _snapshot(store)
    errors: List[DraftIssue] = []
    warnings: List[DraftIssue] = []
    needs_review: List[Resolution] = []
    payload = parsed.payload
    kind = DraftKind(parsed.kind)
    name = _text(payload.name) or _text(payload.title) or _text(parsed.title)
    normalized = NormalizedDraft(
        kind=kind,
        title=parsed.title,
        summary=parsed.summary,
        confidence=parsed.confidence,
        risk=parsed.risk,
        name=name,
        requested_name=name,
    )

    if kind is DraftKind.CREATE_GYM:
        if not name:
            errors.append(DraftIssue("validation", "Provide a name for the gym."))
        unique = disambiguate_name(name, [s.get("name") or "" for s in snapshot["spaces"]])
        if name and unique != name:
            warnings.append(
                DraftIssue("collision", f'Gym name already exists. Will create "{unique}".')
            )
        normalized.name = unique
        known = {item["id"] for item in snapshot["equipment"]}
        requested = list(dict.fromkeys(payload.equipment_ids))
        if any(eid not in known for eid in requested):
            warnings.append(
                DraftIssue(
                    "validation",
                    "Some equipment IDs were not recognized and will be skipped.",
                )
            )
        normalized.equipment_ids = normalize_space_equipment_ids(requested, known)
        normalized.is_default = payload.is_default
        normalized.description = _text(payload.description)
        return _result(errors, warnings, normalized, needs_review)

    if not name:
        errors.append(DraftIssue("validation", "Provide a name or title for the draft."))

    gym_id = payload.gym_id or default_gym_id
    normalized.gym_id = gym_id
    if gym_id is not None and gym_id not in {s["id"] for s in snapshot["spaces"]}:
        errors.append(DraftIssue("referential", "Selected gym does not exist."))

    by_id = {row["id"]: row for row in snapshot["exercises"]}
    unknown: List[int] = []
    unmatched: List[str] = []
    exercises: List[NormalizedExercise] = []
    dropped: List[str] = []
    for entry in payload.exercises:
        exercise_id = entry.exercise_id
        if exercise_id is None:
            result = resolve(entry.name, snapshot["exercises"], policy=policy)
            if not result.resolved:
                needs_review.append(result)
                unmatched.append(result.requested_name)
                continue
            exercise_id = result.exercise_id
        exercise = by_id.get(exercise_id)
        if exercise is None:
            if exercise_id not in unknown:
                unknown.append(exercise_id)
            continue
        exercises.append(_normalize_exercise(entry, exercise_id, exercise, dropped))

    if dropped:
        values = ", ".join(f'"{v}"' for v in dict.fromkeys(dropped))
        warnings.append(
            DraftIssue("validation", f"Non-numeric set values were left blank: {values}.")
        )
    if unknown:
        errors.append(
            DraftIssue(
                "referential",
                f"Unknown exercise IDs: {', '.join(str(i) for i in unknown)}.",
            )
        )
    if unmatched:
        errors.append(
            DraftIssue(
                "referential",
                f"Could not match exercises: {', '.join(unmatched)}. Pick from the suggestions.",
            )
        )
    for entry in payload.needs_review:
        needs_review.append(_review_from_payload(entry))
        warnings.append(
            DraftIssue("validation", f'"{entry.requested_name}" needs review before it can be added.')
        )
    if not exercises and not unknown and not unmatched:
        errors.append(DraftIssue("validation", "Include at least one exercise in the draft."))

    if kind is DraftKind.CREATE_TEMPLATE:
        seen: set[int] = set()
        duplicates: List[str] = []
        for item in exercises:
            if item.exercise_id in seen:
                duplicates.append(by_id[item.exercise_id].get("name") or str(item.exercise_id))
            seen.add(item.exercise_id)
        if duplicates:
            errors.append(
                DraftIssue(
                    "validation",
                    f"Templates cannot repeat an exercise: {', '.join(dict.fromkeys(duplicates))}.",
                )
            )
        unique = disambiguate_name(name, [t.get("name") or "" for t in snapshot["templates"]])
        if name and unique != name:
            warnings.append(
                DraftIssue("collision", f'Template name already exists. Will create "{unique}".')
            )
        normalized.name = unique

    normalized.exercises = exercises
    return _result(errors, warnings, normalized, needs_review)


def _result(
    errors: List[DraftIssue],
    warnings: List[DraftIssue],
    normalized: NormalizedDraft,
    needs_review: List[Resolution],
) -> DraftValidation:
    valid = not errors
    return DraftValidation(
        valid=valid,
        errors=errors,
        warnings=warnings,
        normalized_draft=normalized if valid else None,
        needs_review=needs_review,
    )
