import asyncio
import json

import httpx

from concierge_ranking.config import EngineConfig
from concierge_ranking.pipeline_types import FailureKind, ProviderFailure, ProviderPayload
from concierge_ranking.provider import OpenAIChatClient

CONFIG = EngineConfig(api_key="test-key", api_url="https://llm.example/v1/chat/completions")
PAYLOAD = {"model": "gpt-test", "messages": []}


def _call(handler, deadline_s=5.0):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await OpenAIChatClient(CONFIG, http_client=http).call(PAYLOAD, deadline_s)

    return asyncio.run(go())


def _completion(content, finish_reason="stop", **message):
    return {"choices": [{"message": {"content": content, **message}, "finish_reason": finish_reason}]}


def test_success_returns_text():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        seen["url"] = str(request.url)
        return httpx.Response(200, json=_completion('{"trustFallback": false}'))

    reply = _call(handler)
    assert isinstance(reply, ProviderPayload)
    assert reply.text == '{"trustFallback": false}'
    assert reply.finish_reason == "stop"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"] == PAYLOAD
    assert seen["url"] == CONFIG.api_url


def test_http_error_status():
    reply = _call(lambda request: httpx.Response(500, json={"error": {"message": "boom"}}))
    assert isinstance(reply, ProviderFailure)
    assert reply.kind == FailureKind.TRANSPORT_ERROR
    assert reply.status_code == 500
    assert reply.error_body == {"error": {"message": "boom"}}


def test_refusal():
    reply = _call(lambda request: httpx.Response(200, json=_completion(None, refusal="I can't help with that")))
    assert isinstance(reply, ProviderFailure)
    assert reply.kind == FailureKind.PROVIDER_REFUSAL

    filtered = _call(lambda request: httpx.Response(200, json=_completion("", finish_reason="content_filter")))
    assert filtered.kind == FailureKind.PROVIDER_REFUSAL


def test_empty_content_is_structurally_empty():
    reply = _call(lambda request: httpx.Response(200, json=_completion("   ")))
    assert isinstance(reply, ProviderFailure)
    assert reply.kind == FailureKind.EMPTY_OR_UNPARSEABLE
    assert reply.structurally_empty

    no_choices = _call(lambda request: httpx.Response(200, json={"choices": []}))
    assert no_choices.kind == FailureKind.EMPTY_OR_UNPARSEABLE
    assert no_choices.structurally_empty


def test_non_json_body():
    reply = _call(lambda request: httpx.Response(200, text="<html>gateway</html>"))
    assert isinstance(reply, ProviderFailure)
    assert reply.kind == FailureKind.EMPTY_OR_UNPARSEABLE
    assert not reply.structurally_empty


def test_timeout():
    async def slow(request):
        await asyncio.sleep(1.0)
        return httpx.Response(200, json=_completion("{}"))

    reply = _call(slow, deadline_s=0.05)
    assert isinstance(reply, ProviderFailure)
    assert reply.kind == FailureKind.TIMEOUT


def test_connection_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    reply = _call(handler)
    assert isinstance(reply, ProviderFailure)
    assert reply.kind == FailureKind.TRANSPORT_ERROR


def test_length_finish_still_returns_text():
    reply = _call(lambda request: httpx.Response(200, json=_completion('{"a": 1', finish_reason="length")))
    assert isinstance(reply, ProviderPayload)
    assert reply.finish_reason == "length"


def test_non_object_message_is_structurally_empty():
    body = {"choices": [{"message": "oops", "finish_reason": "stop"}]}
    reply = _call(lambda request: httpx.Response(200, json=body))
    assert isinstance(reply, ProviderFailure)
    assert reply.kind == FailureKind.EMPTY_OR_UNPARSEABLE
    assert reply.structurally_empty
