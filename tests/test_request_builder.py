from concierge_ranking.config import (
    BundleItem,
    EngineConfig,
    HardConstraints,
    ProductCandidate,
    RankingRequest,
    VariantConstraints,
)
from concierge_ranking.pipeline_types import CompressionLevel
from concierge_ranking.request_builder import (
    build_payload,
    build_user_prompt,
    payload_size,
    should_compress,
)

CONFIG = EngineConfig(api_key="test-key")


def _cands(n, item_index=None):
    return [
        ProductCandidate(
            handle=f"p{i}",
            title=f"Product {i}",
            vendor="Acme",
            price=10 + i,
            description="<p>Soft cotton</p>",
            tags=["cotton"],
            item_index=item_index,
        )
        for i in range(n)
    ]


def _request(n=3, **kw):
    return RankingRequest(user_intent="i want a cotton shirt w/o logo", candidates=_cands(n), result_count=3, **kw)


def test_payload_shape():
    req = _request(variant_constraints=VariantConstraints(size="M"))
    payload = build_payload(req, req.candidates, CompressionLevel.FULL, CONFIG)

    assert payload["model"] == CONFIG.model
    assert payload["response_format"] == {"type": "json_object"}
    assert payload["max_tokens"] == CONFIG.max_tokens
    roles = [m["role"] for m in payload["messages"]]
    assert roles == ["system", "user"]

    user = payload["messages"][1]["content"]
    assert "I need a cotton shirt without logo" in user
    assert "Handle: p0" in user
    assert "Soft cotton" in user and "<p>" not in user
    assert "size=M" in user
    assert '"selected"' in user


def test_compact_and_minimal_levels():
    req = _request()
    compact = build_user_prompt(req, req.candidates, CompressionLevel.COMPACT)
    minimal = build_user_prompt(req, req.candidates, CompressionLevel.MINIMAL)
    assert '"h":"p0"' in compact
    assert '"d":"Soft cotton"' in compact
    assert '"h":"p0"' in minimal
    assert '"d":' not in minimal
    assert len(minimal) < len(compact)


def test_should_compress():
    small = _request()
    size = payload_size(build_payload(small, small.candidates, CompressionLevel.FULL, CONFIG))
    assert not should_compress(small, 3, size, CONFIG)
    assert should_compress(small, CONFIG.compress_candidate_count + 1, size, CONFIG)
    assert should_compress(small, 3, CONFIG.compress_payload_chars + 1, CONFIG)


def test_bundle_payload():
    hc = HardConstraints(
        bundle_items=[BundleItem(hard_terms=["suit"]), BundleItem(hard_terms=["shirt"], quantity=2)],
        total_budget=500,
    )
    cands = _cands(2, item_index=0) + [ProductCandidate(handle="s1", title="Shirt", item_index=1)]
    req = RankingRequest(user_intent="wedding outfit", candidates=cands, hard_constraints=hc, result_count=3)

    assert should_compress(req, 3, 100, CONFIG)
    payload = build_payload(req, req.candidates, CompressionLevel.COMPACT, CONFIG)
    user = payload["messages"][1]["content"]
    assert payload["max_tokens"] == CONFIG.bundle_max_tokens
    assert '"selected_by_item"' in user
    assert "Bundle item 1: hard terms=shirt, quantity=2" in user
    assert "Bundle total budget: 500.00" in user
    assert '"i":1' in user
