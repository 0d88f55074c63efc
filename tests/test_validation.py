from concierge_ranking.config import HardConstraints, HardFacets, ProductCandidate, RankingRequest
from concierge_ranking.pipeline_types import FailureKind, StructuredResult, ValidationFailure
from concierge_ranking.validation import (
    HandleIndex,
    parse_legacy,
    validate_structure,
    verify_constraints,
    verify_hard_terms,
)


def _pool():
    return [
        ProductCandidate(handle="wool-coat", title="Merino Wool Coat", sizes=["M", "L"]),
        ProductCandidate(handle="cotton-tee", title="Cotton Tee", sizes=["S"]),
        ProductCandidate(handle="leather-jacket", title="Biker Jacket", description="Genuine leather, wool lining"),
    ]


def _request(trust_fallback=False, facets=None):
    hc = HardConstraints(
        hard_terms=["wool"],
        avoid_terms=["leather"],
        trust_fallback=trust_fallback,
        hard_facets=facets or HardFacets(),
    )
    return RankingRequest(user_intent="wool coat", candidates=_pool(), hard_constraints=hc, result_count=3)


def _pick(handle, terms=("wool",), label="exact"):
    return {
        "handle": handle,
        "label": label,
        "score": 90,
        "evidence": {"matchedHardTerms": list(terms), "fieldsUsed": ["title"]},
        "reason": "Matches the request",
    }


def _validated(data, req=None):
    req = req or _request()
    index = HandleIndex(req.candidates)
    return req, index, validate_structure(data, req, index)


def test_handle_index_recovers_case():
    index = HandleIndex(_pool())
    assert index.resolve("Wool-Coat") == "wool-coat"
    assert index.resolve(" cotton-tee ") == "cotton-tee"
    assert index.resolve("ghost") is None
    assert index.resolve(42) is None


def test_unknown_handles_are_dropped_and_counted():
    _, _, result = _validated({"trustFallback": False, "selected": [_pick("ghost"), _pick("wool-coat")]})
    assert isinstance(result, StructuredResult)
    assert [i.handle for i in result.items] == ["wool-coat"]
    assert result.dropped == {"unknown_handle": 1}


def test_duplicate_and_evidence_free_picks_dropped():
    data = {
        "trustFallback": False,
        "selected": [_pick("wool-coat"), _pick("WOOL-COAT"), _pick("cotton-tee", terms=())],
    }
    _, _, result = _validated(data)
    assert [i.handle for i in result.items] == ["wool-coat"]
    assert result.dropped == {"duplicate_handle": 1, "empty_matched_hard_terms": 1}


def test_only_unknown_handles_is_schema_violation():
    _, _, result = _validated({"trustFallback": False, "selected": [_pick("ghost")]})
    assert isinstance(result, ValidationFailure)
    assert result.kind == FailureKind.SCHEMA_VIOLATION


def test_missing_trust_fallback_is_schema_violation():
    _, _, result = _validated({"selected": [_pick("wool-coat")]})
    assert isinstance(result, ValidationFailure)
    assert result.kind == FailureKind.SCHEMA_VIOLATION


def test_legacy_ranked_handles_shape():
    req = _request()
    index = HandleIndex(req.candidates)
    result = parse_legacy({"ranked_handles": ["WOOL-COAT", "cotton-tee", "ghost"]}, req, index)
    assert result.legacy
    assert not result.trust_fallback
    assert [(i.handle, i.label) for i in result.items] == [("wool-coat", "exact"), ("cotton-tee", "alternative")]
    assert result.items[0].evidence.matched_hard_terms == ["wool"]

    _, _, via_validate = _validated(["cotton-tee"])
    assert isinstance(via_validate, StructuredResult) and via_validate.legacy


def test_verify_hard_terms_ignores_unrequested_and_absent_terms():
    coat, tee = _pool()[0], _pool()[1]
    assert verify_hard_terms(["wool", "silk"], ["wool"], coat) == (["wool"], ["title"])
    assert verify_hard_terms(["wool"], ["wool"], tee) == ([], [])


def test_false_evidence_is_dropped():
    req, index, structured = _validated(
        {"trustFallback": False, "selected": [_pick("wool-coat"), _pick("cotton-tee")]}
    )
    result = verify_constraints(structured, req, index)
    assert [i.handle for i in result.items] == ["wool-coat"]
    assert result.items[0].evidence.fields_used == ["title"]
    assert result.dropped == {"hard_terms": 1}


def test_avoid_terms_always_disqualify():
    req, index, structured = _validated(
        {"trustFallback": True, "selected": [_pick("leather-jacket"), _pick("wool-coat")]},
        _request(trust_fallback=True),
    )
    result = verify_constraints(structured, req, index)
    assert [i.handle for i in result.items] == ["wool-coat"]

    req, index, structured = _validated({"trustFallback": False, "selected": [_pick("leather-jacket")]})
    failure = verify_constraints(structured, req, index)
    assert isinstance(failure, ValidationFailure)
    assert failure.kind == FailureKind.CONSTRAINT_VIOLATION


def test_permitted_trust_fallback_relabels_alternatives():
    req, index, structured = _validated(
        {"trustFallback": True, "selected": [_pick("cotton-tee", terms=()), _pick("wool-coat")]},
        _request(trust_fallback=True),
    )
    result = verify_constraints(structured, req, index)
    assert result.trust_fallback
    assert [(i.handle, i.label) for i in result.items] == [("cotton-tee", "alternative"), ("wool-coat", "exact")]


def test_unpermitted_trust_fallback_still_enforces():
    req, index, structured = _validated(
        {"trustFallback": True, "selected": [_pick("cotton-tee", terms=()), _pick("wool-coat")]}
    )
    result = verify_constraints(structured, req, index)
    assert not result.trust_fallback
    assert [i.handle for i in result.items] == ["wool-coat"]


def test_all_failing_clean_picks_surface_as_alternatives():
    req, index, structured = _validated({"trustFallback": False, "selected": [_pick("cotton-tee")]})
    result = verify_constraints(structured, req, index)
    assert isinstance(result, StructuredResult)
    assert result.trust_fallback
    assert [(i.handle, i.label) for i in result.items] == [("cotton-tee", "alternative")]


def test_required_facets_are_checked():
    req = _request(facets=HardFacets(size=["S"]))
    req, index, structured = _validated({"trustFallback": False, "selected": [_pick("wool-coat")]}, req)
    result = verify_constraints(structured, req, index)
    assert result.trust_fallback
    assert result.items[0].label == "alternative"
    assert result.dropped == {"hard_facets": 1}
