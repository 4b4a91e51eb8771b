"""Leverage scoring: weighted, normalized priority scores for candidates.

A :class:`WeightTable` is configuration data: a list of criteria, each naming
a sub-score, a signed weight, and a normalizer that maps the raw sub-score onto
[0, 1]. Benefit criteria carry positive weights; cost criteria (time, effort)
carry negative weights instead of inverted normalizers. Signed weights must sum
to 1.0 within ``WEIGHT_TOLERANCE``.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Annotated, Any, Iterable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidWeights
from .models import Candidate

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-6
SCORE_EPSILON = 1e-9


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------


class LinearNormalizer(BaseModel):
    """Clamp ``(x - lo) / (hi - lo)`` to [0, 1]."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["linear"] = "linear"
    lo: float = 0.0
    hi: float = 10.0

    def __call__(self, raw: float) -> float:
        if math.isnan(raw):
            return 0.0
        span = self.hi - self.lo
        return min(1.0, max(0.0, (raw - self.lo) / span))


class SaturatingNormalizer(BaseModel):
    """``x / (x + half)`` for x >= 0, reaching 0.5 at ``half``; negatives map to 0."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["saturating"] = "saturating"
    half: float = 1.0

    def __call__(self, raw: float) -> float:
        if math.isnan(raw) or raw <= 0:
            return 0.0
        if math.isinf(raw):
            return 1.0
        return raw / (raw + self.half)


Normalizer = Annotated[Union[LinearNormalizer, SaturatingNormalizer], Field(discriminator="kind")]


def linear(lo: float, hi: float) -> LinearNormalizer:
    if not (math.isfinite(lo) and math.isfinite(hi)) or hi <= lo:
        raise InvalidWeights(f"linear normalizer needs finite lo < hi, got lo={lo}, hi={hi}")
    return LinearNormalizer(lo=lo, hi=hi)


def saturating(half: float) -> SaturatingNormalizer:
    if not math.isfinite(half) or half <= 0:
        raise InvalidWeights(f"saturating normalizer needs a finite half > 0, got {half}")
    return SaturatingNormalizer(half=half)


# ---------------------------------------------------------------------------
# Weight tables
# ---------------------------------------------------------------------------


class Criterion(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    weight: float
    normalizer: Normalizer = Field(default_factory=LinearNormalizer)


class _WeightTablePayload(BaseModel):
    criteria: list[Criterion] = Field(min_length=1)


class WeightTable:
    """Validated set of scoring criteria.

    Raises:
        InvalidWeights: On construction if criteria are missing, duplicated,
            have non-finite weights, or signed weights do not sum to 1.0.
    """

    def __init__(self, criteria: Iterable[Criterion]) -> None:
        self.criteria: tuple[Criterion, ...] = tuple(criteria)
        if not self.criteria:
            raise InvalidWeights("weight table must define at least one criterion")
        names = [criterion.name for criterion in self.criteria]
        if len(set(names)) != len(names):
            raise InvalidWeights(f"weight table has duplicate criteria: {names}")
        for criterion in self.criteria:
            if not math.isfinite(criterion.weight):
                raise InvalidWeights(f"criterion {criterion.name} has a non-finite weight")
            normalizer = criterion.normalizer
            if isinstance(normalizer, LinearNormalizer) and normalizer.hi <= normalizer.lo:
                raise InvalidWeights(f"criterion {criterion.name}: linear normalizer needs lo < hi")
            if isinstance(normalizer, SaturatingNormalizer) and normalizer.half <= 0:
                raise InvalidWeights(f"criterion {criterion.name}: saturating normalizer needs half > 0")
        total = math.fsum(criterion.weight for criterion in self.criteria)
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise InvalidWeights(f"criterion weights must sum to 1.0 (+/- {WEIGHT_TOLERANCE}), got {total}")

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> "WeightTable":
        try:
            parsed = _WeightTablePayload.model_validate(payload)
        except ValidationError as exc:
            raise InvalidWeights(f"weight table failed validation: {exc}") from exc
        return cls(parsed.criteria)

    @classmethod
    def from_json(cls, text: str) -> "WeightTable":
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise InvalidWeights(f"weight table is not valid JSON: {exc}") from exc
        if isinstance(payload, list):
            payload = {"criteria": payload}
        if not isinstance(payload, dict):
            raise InvalidWeights("weight table must be a JSON object or list of criteria")
        return cls.from_mapping(payload)

    def to_dict(self) -> dict[str, Any]:
        return {"criteria": [criterion.model_dump(mode="json") for criterion in self.criteria]}

    @property
    def names(self) -> list[str]:
        return [criterion.name for criterion in self.criteria]


# Leverage protocol ratios 40/25/15 for alignment/unlock/likelihood, with time
# and effort each costing 10, rescaled so the signed weights sum to 1.0.
DEFAULT_WEIGHTS = WeightTable(
    [
        Criterion(name="alignment", weight=0.60, normalizer=LinearNormalizer(lo=0.0, hi=10.0)),
        Criterion(name="unlock", weight=0.375, normalizer=LinearNormalizer(lo=0.0, hi=10.0)),
        Criterion(name="likelihood", weight=0.225, normalizer=LinearNormalizer(lo=0.0, hi=10.0)),
        Criterion(name="time", weight=-0.10, normalizer=LinearNormalizer(lo=0.0, hi=10.0)),
        Criterion(name="effort", weight=-0.10, normalizer=LinearNormalizer(lo=0.0, hi=10.0)),
    ]
)


def load_weights(source: str | None) -> WeightTable:
    """Load a weight table from inline JSON or a JSON file path.

    An empty source yields :data:`DEFAULT_WEIGHTS`.
    """
    if not source:
        return DEFAULT_WEIGHTS
    stripped = source.strip()
    if stripped.startswith(("{", "[")):
        return WeightTable.from_json(stripped)
    path = Path(stripped)
    if not path.is_file():
        raise InvalidWeights(f"weight table file not found: {path}")
    return WeightTable.from_json(path.read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Scoring and ranking
# ---------------------------------------------------------------------------


def score(candidate: Candidate, weights: WeightTable = DEFAULT_WEIGHTS) -> float:
    """Weighted sum of normalized sub-scores; missing sub-scores normalize from 0."""
    return math.fsum(
        criterion.weight * criterion.normalizer(candidate.subscores.get(criterion.name, 0.0))
        for criterion in weights.criteria
    )


def score_candidates(candidates: Iterable[Candidate], weights: WeightTable = DEFAULT_WEIGHTS) -> list[Candidate]:
    """Return copies of *candidates* with ``score`` recomputed."""
    return [candidate.model_copy(update={"score": score(candidate, weights)}) for candidate in candidates]


def ranking_key(candidate: Candidate) -> tuple[int, float, str]:
    """Sort key: descending score, then ascending effort, then candidate id.

    Scores are bucketed to multiples of ``SCORE_EPSILON`` so near-equal scores
    tie while the ordering stays a strict total order.
    """
    value = candidate.score if candidate.score is not None else 0.0
    return (-round(value / SCORE_EPSILON), candidate.estimated_effort, candidate.candidate_id)


def rank(candidates: Iterable[Candidate], weights: WeightTable | None = None) -> list[Candidate]:
    """Sort candidates best first.

    Candidates without a score are scored with *weights* (or the default table)
    first; already-scored candidates keep their score.
    """
    table = weights if weights is not None else DEFAULT_WEIGHTS
    prepared = [
        candidate if candidate.score is not None else candidate.model_copy(update={"score": score(candidate, table)})
        for candidate in candidates
    ]
    return sorted(prepared, key=ranking_key)
