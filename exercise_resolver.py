"""Map free-text exercise references to canonical exercise ids."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

# Each class lists the canonical phrase first followed by the spellings
# that collapse into it. Lookup is by single token.
TOKEN_EQUIVALENCE_CLASSES = [
    ("dumbbell", "db", "dbs"),
    ("barbell", "bb"),
    ("kettlebell", "kb", "kbs"),
    ("bodyweight", "bw"),
    ("romanian deadlift", "rdl", "rdls"),
    ("overhead press", "ohp"),
    ("push up", "pushup", "pushups"),
    ("pull up", "pullup", "pullups"),
    ("chin up", "chinup", "chinups"),
    ("sit up", "situp", "situps"),
]

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def _singularize_once(token: str) -> str:
    if len(token) <= 2:
        return token
    if token.endswith("ies") and len(token) > 4:
        return token[:-3] + "y"
    if token.endswith(("ses", "xes", "zes", "ches", "shes")):
        return token[:-2]
    if token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def _singularize(token: str) -> str:
    while True:
        nxt = _singularize_once(token)
        if nxt == token:
            return token
        token = nxt


def _build_token_table(classes) -> dict[str, tuple[str, ...]]:
    table: dict[str, tuple[str, ...]] = {}
    for canonical, *spellings in classes:
        tokens = tuple(canonical.split())
        for token in tokens:
            if _singularize(token) != token:
                raise ValueError(f"canonical token {token!r} is not singular")
        for spelling in spellings:
            table[spelling] = tokens
    for tokens in table.values():
        for token in tokens:
            if token in table:
                raise ValueError(f"canonical token {token!r} is also an alias")
    return table


TOKEN_TABLE = _build_token_table(TOKEN_EQUIVALENCE_CLASSES)


def _canonical_tokens(token: str) -> tuple[str, ...]:
    if token in TOKEN_TABLE:
        return TOKEN_TABLE[token]
    single = _singularize(token)
    if single in TOKEN_TABLE:
        return TOKEN_TABLE[single]
    return (single,)


def tokenize(text: object) -> List[str]:
    safe = _NON_ALNUM.sub(" ", str(text if text is not None else "").lower()).strip()
    if not safe:
        return []
    tokens: List[str] = []
    for raw in safe.split():
        expanded = _canonical_tokens(raw)
        tokens.extend(dict.fromkeys(expanded))
    return tokens


def normalize(text: object) -> str:
    """Lower-case, expand abbreviations and singularize.

    >>> normalize("DB bench")
    'dumbbell bench'
    >>> normalize("Pushups")
    'push up'
    """
    return " ".join(tokenize(text))


class ResolutionStatus(str, Enum):
    RESOLVED = "resolved"
    NEEDS_REVIEW = "needs_review"


@dataclass(frozen=True)
class ResolverPolicy:
    threshold: float = 0.74
    tie_margin: float = 0.08
    max_suggestions: int = 3
    suggestion_floor: float = 0.35
    review_floor: float = 0.4
    review_window: float = 0.12
    starts_with_bonus: float = 0.08
    contains_bonus: float = 0.05


DEFAULT_POLICY = ResolverPolicy()
# Loose drafts tolerate weaker matches.
DRAFT_POLICY = ResolverPolicy(threshold=0.58, tie_margin=0.06)


@dataclass
class Suggestion:
    exercise_id: int
    name: str
    score: float

    def to_dict(self) -> dict:
        return {"exercise_id": self.exercise_id, "name": self.name, "score": self.score}


@dataclass
class Resolution:
    status: ResolutionStatus
    requested_name: str
    exercise_id: Optional[int] = None
    name: Optional[str] = None
    score: float = 0.0
    matched_by: Optional[str] = None
    suggestions: List[Suggestion] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.status is ResolutionStatus.RESOLVED

    def to_dict(self) -> dict:
        data = {"status": self.status.value, "requested_name": self.requested_name}
        if self.resolved:
            data.update(
                exercise_id=self.exercise_id,
                name=self.name,
                score=self.score,
                matched_by=self.matched_by,
            )
        else:
            data["suggestions"] = [s.to_dict() for s in self.suggestions]
        return data


@dataclass
class ExerciseIndex:
    by_id: dict[int, dict]
    by_name: dict[str, List[int]]

    def lookup(self, text: object) -> List[int]:
        return list(self.by_name.get(normalize(text), []))


def _labels(exercise: dict) -> List[str]:
    labels = [exercise.get("name")] + list(exercise.get("aliases") or [])
    return [str(label).strip() for label in labels if label and str(label).strip()]


def _display_name(exercise: Optional[dict]) -> str:
    if not exercise:
        return "Unknown Exercise"
    return str(exercise.get("name") or "").strip() or "Unknown Exercise"


def build_index(exercises: Iterable[dict]) -> ExerciseIndex:
    """Index every name and alias under its normalized form."""
    by_id: dict[int, dict] = {}
    by_name: dict[str, List[int]] = {}
    for exercise in exercises or []:
        if not exercise or exercise.get("id") is None:
            continue
        ex_id = exercise["id"]
        by_id[ex_id] = exercise
        for label in _labels(exercise):
            key = normalize(label)
            if not key:
                continue
            ids = by_name.setdefault(key, [])
            if ex_id not in ids:
                ids.append(ex_id)
    return ExerciseIndex(by_id, by_name)


def _rank_key(entry: Suggestion) -> tuple:
    return (-entry.score, len(entry.name), entry.name.lower())


def score_label(query: str, query_tokens: set[str], label: str, policy: ResolverPolicy) -> float:
    normalized = normalize(label)
    if not normalized:
        return 0.0
    if normalized == query:
        return 1.0
    label_tokens = set(normalized.split())
    overlap = len(query_tokens & label_tokens)
    coverage = overlap / len(query_tokens) if query_tokens else 0.0
    bonus = 0.0
    if normalized.startswith(query):
        bonus += policy.starts_with_bonus
    if query in normalized:
        bonus += policy.contains_bonus
    return min(0.99, coverage + bonus)


def _needs_review(requested: str, ranked: List[Suggestion], policy: ResolverPolicy) -> Resolution:
    return Resolution(
        status=ResolutionStatus.NEEDS_REVIEW,
        requested_name=requested,
        suggestions=[
            Suggestion(s.exercise_id, s.name, round(s.score, 3))
            for s in ranked[: policy.max_suggestions]
        ],
    )


def resolve(
    text: object,
    all_exercises: Iterable[dict] | None = None,
    candidates: Iterable[dict] | None = None,
    policy: ResolverPolicy = DEFAULT_POLICY,
) -> Resolution:
    """Resolve ``text`` against ``candidates`` (or the whole library).

    Never raises for unmatched input; ambiguous or weak matches come back
    with status ``needs_review`` and ranked suggestions.
    """
    requested = str(text if text is not None else "").strip()
    pool = [ex for ex in (candidates or []) if ex]
    if not pool:
        pool = [ex for ex in (all_exercises or []) if ex]
    if not requested or not pool:
        return _needs_review(requested, [], policy)

    index = build_index(pool)
    if requested.isdigit() and int(requested) in index.by_id:
        ex_id = int(requested)
        return Resolution(
            ResolutionStatus.RESOLVED,
            requested,
            ex_id,
            _display_name(index.by_id[ex_id]),
            1.0,
            "id_exact",
        )

    query = normalize(requested)
    exact = index.by_name.get(query, [])
    if len(exact) == 1:
        return Resolution(
            ResolutionStatus.RESOLVED,
            requested,
            exact[0],
            _display_name(index.by_id[exact[0]]),
            1.0,
            "name_exact",
        )
    if len(exact) > 1:
        ranked = sorted(
            (Suggestion(i, _display_name(index.by_id[i]), 1.0) for i in exact), key=_rank_key
        )
        return _needs_review(requested, ranked, policy)

    query_tokens = set(query.split())
    ranked = []
    for ex_id, exercise in index.by_id.items():
        best = max(
            (score_label(query, query_tokens, label, policy) for label in _labels(exercise)),
            default=0.0,
        )
        ranked.append(Suggestion(ex_id, _display_name(exercise), best))
    ranked.sort(key=_rank_key)

    if not ranked or ranked[0].score < policy.threshold:
        return _needs_review(
            requested, [s for s in ranked if s.score >= policy.suggestion_floor], policy
        )

    top = ranked[0]
    runner_up = ranked[1] if len(ranked) > 1 else None
    if runner_up is not None and top.score - runner_up.score <= policy.tie_margin:
        floor = max(policy.review_floor, top.score - policy.review_window)
        return _needs_review(requested, [s for s in ranked if s.score >= floor], policy)

    return Resolution(
        ResolutionStatus.RESOLVED,
        requested,
        top.exercise_id,
        top.name,
        round(top.score, 3),
        "fuzzy",
    )


@dataclass
class DraftExerciseMapping:
    entries: List[dict]
    needs_review: List[Resolution]


_NAME_FIELDS = ("name", "exercise_name", "exerciseName", "exercise", "title", "label")


def entry_name(entry: object) -> str:
    if isinstance(entry, str):
        return entry.strip()
    if not isinstance(entry, dict):
        return ""
    for key in _NAME_FIELDS:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def resolve_draft_exercises(
    entries: Iterable[dict | str],
    all_exercises: List[dict],
    policy: ResolverPolicy = DRAFT_POLICY,
) -> DraftExerciseMapping:
    """Fill in ``exercise_id`` for entries that only carry a name.

    Entries with an explicit id are passed through untouched so that
    unknown ids can be reported by the validator.
    """
    mapped: List[dict] = []
    review: List[Resolution] = []
    for entry in entries or []:
        data = dict(entry) if isinstance(entry, dict) else {}
        if data.get("exercise_id") is not None:
            mapped.append(data)
            continue
        name = entry_name(entry)
        if not name:
            continue
        result = resolve(name, all_exercises, policy=policy)
        if result.resolved:
            data["exercise_id"] = result.exercise_id
            mapped.append(data)
        else:
            review.append(result)
    return DraftExerciseMapping(mapped, review)
