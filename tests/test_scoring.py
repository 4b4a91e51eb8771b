import itertools
import json
import math
from pathlib import Path

import pytest

from phasegate.errors import InvalidWeights
from phasegate.models import Candidate
from phasegate.scoring import (
    DEFAULT_WEIGHTS,
    Criterion,
    LinearNormalizer,
    SaturatingNormalizer,
    WeightTable,
    linear,
    load_weights,
    rank,
    saturating,
    score,
)


def test_default_weights_sum_to_one() -> None:
    assert math.isclose(sum(c.weight for c in DEFAULT_WEIGHTS.criteria), 1.0, abs_tol=1e-9)
    assert DEFAULT_WEIGHTS.names == ["alignment", "unlock", "likelihood", "time", "effort"]


def test_weight_table_outside_tolerance_is_rejected() -> None:
    with pytest.raises(InvalidWeights):
        WeightTable([Criterion(name="alignment", weight=0.5), Criterion(name="unlock", weight=0.4)])
    with pytest.raises(InvalidWeights):
        WeightTable([Criterion(name="alignment", weight=0.5), Criterion(name="alignment", weight=0.5)])
    with pytest.raises(InvalidWeights):
        WeightTable([])

    within = WeightTable([Criterion(name="alignment", weight=0.6), Criterion(name="unlock", weight=0.4 + 5e-7)])
    assert within.names == ["alignment", "unlock"]


def test_normalizers_are_total_and_bounded() -> None:
    lin = linear(0.0, 10.0)
    assert lin(-5.0) == 0.0
    assert lin(5.0) == 0.5
    assert lin(50.0) == 1.0
    assert lin(float("nan")) == 0.0

    sat = saturating(4.0)
    assert sat(4.0) == 0.5
    assert sat(0.0) == 0.0
    assert sat(-1.0) == 0.0
    assert sat(float("nan")) == 0.0
    assert 0.0 < sat(1_000.0) < 1.0

    with pytest.raises(InvalidWeights):
        linear(5.0, 5.0)
    with pytest.raises(InvalidWeights):
        saturating(0.0)


def test_score_never_raises_within_domain() -> None:
    table = WeightTable(
        [
            Criterion(name="alignment", weight=0.9, normalizer=LinearNormalizer(lo=0, hi=10)),
            Criterion(name="unlock", weight=0.3, normalizer=SaturatingNormalizer(half=2)),
            Criterion(name="effort", weight=-0.2),
        ]
    )
    for raw in (-3.0, 0.0, 2.5, 10.0, 1e6):
        candidate = Candidate(candidate_id="c", subscores={"alignment": raw, "unlock": raw, "effort": raw})
        value = score(candidate, table)
        assert math.isfinite(value)
        assert -0.2 <= value <= 1.2


def test_missing_subscores_normalize_from_zero() -> None:
    candidate = Candidate(candidate_id="empty")
    assert score(candidate) == 0.0

    full = Candidate(
        candidate_id="full",
        subscores={"alignment": 10, "unlock": 10, "likelihood": 10, "time": 0, "effort": 0},
    )
    assert math.isclose(score(full), 1.2)


def test_cost_criteria_lower_the_score() -> None:
    cheap = Candidate(candidate_id="cheap", subscores={"alignment": 8, "effort": 1})
    costly = Candidate(candidate_id="costly", subscores={"alignment": 8, "effort": 9})
    assert score(cheap) > score(costly)


def test_ties_break_by_effort_then_id() -> None:
    candidates = [
        Candidate(candidate_id="zeta", score=0.5, subscores={"effort": 3}),
        Candidate(candidate_id="alpha", score=0.5 + 1e-12, subscores={"effort": 3}),
        Candidate(candidate_id="light", score=0.5, subscores={"effort": 1}),
        Candidate(candidate_id="top", score=0.9),
    ]
    assert [c.candidate_id for c in rank(candidates)] == ["top", "light", "alpha", "zeta"]


def test_rank_scores_unscored_candidates() -> None:
    ranked = rank(
        [
            Candidate(candidate_id="low", subscores={"alignment": 1}),
            Candidate(candidate_id="high", subscores={"alignment": 9}),
        ]
    )
    assert [c.candidate_id for c in ranked] == ["high", "low"]
    assert all(c.score is not None for c in ranked)


def test_load_weights_from_json_and_file(tmp_path: Path) -> None:
    payload = {
        "criteria": [
            {"name": "alignment", "weight": 1.2, "normalizer": {"kind": "linear", "lo": 0, "hi": 5}},
            {"name": "time", "weight": -0.2, "normalizer": {"kind": "saturating", "half": 3}},
        ]
    }
    inline = load_weights(json.dumps(payload))
    assert inline.names == ["alignment", "time"]
    assert isinstance(inline.criteria[1].normalizer, SaturatingNormalizer)

    path = tmp_path / "weights.json"
    path.write_text(json.dumps(payload["criteria"]), encoding="utf-8")
    assert load_weights(str(path)).to_dict() == inline.to_dict()

    assert load_weights("") is DEFAULT_WEIGHTS
    with pytest.raises(InvalidWeights):
        load_weights("{not json")
    with pytest.raises(InvalidWeights):
        load_weights(str(tmp_path / "missing.json"))
    with pytest.raises(InvalidWeights):
        load_weights(json.dumps({"criteria": [{"name": "x", "weight": 1.0, "normalizer": {"kind": "cubic"}}]}))


def test_non_finite_subscores_are_rejected() -> None:
    with pytest.raises(ValueError):
        Candidate(candidate_id="inf", subscores={"alignment": float("inf")})
    with pytest.raises(ValueError):
        Candidate(candidate_id="nan", subscores={"alignment": float("nan")})
    with pytest.raises(ValueError):
        Candidate(candidate_id="nan-score", score=float("nan"))


def test_near_equal_scores_rank_consistently() -> None:
    # Pairwise within 1e-9 of each other but not all within 1e-9 of the first.
    candidates = [
        Candidate(candidate_id="c", score=1.2e-9),
        Candidate(candidate_id="a", score=0.0),
        Candidate(candidate_id="b", score=0.6e-9),
    ]
    orders = {
        tuple(c.candidate_id for c in rank(list(permutation)))
        for permutation in itertools.permutations(candidates)
    }
    assert orders == {("b", "c", "a")}
