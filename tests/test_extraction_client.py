import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from flyer_ingest.config import ExtractionConfig
from flyer_ingest.errors import ExtractionError, ExtractionErrorKind
from flyer_ingest.pipeline.extraction import ExtractionClient, ExtractionContext, build_prompt

REQUEST = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")


def completion(content, finish_reason="stop", prompt_tokens=1200, completion_tokens=300):
    return SimpleNamespace(
        id="cmpl-test",
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason=finish_reason)],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


class FakeCompletions:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def make_client(responses, **config):
    completions = FakeCompletions(responses)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return ExtractionClient(ExtractionConfig(**config), client=fake), completions


CONTEXT = ExtractionContext(store_code="iki", hint="IKI (LT grocery).")
GOOD = json.dumps({"products": [{"name": "Pienas 1 L", "price": "1,29"}, {"name": "Duona", "price": "0,99"}]})


def test_valid_response_becomes_listings():
    client, completions = make_client([completion(GOOD)])
    outcome = client.extract(b"png-bytes", CONTEXT, page_index=3)

    assert [l.name for l in outcome.listings] == ["Pienas 1 L", "Duona"]
    assert all(l.page_index == 3 for l in outcome.listings)
    assert outcome.strict_retry_used is False
    call = completions.calls[0]
    assert call["response_format"] == {"type": "json_object"}
    image_part = call["messages"][1]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")


def test_fenced_json_is_recovered():
    client, _ = make_client([completion(f"Here you go:\n```json\n{GOOD}\n```")])
    outcome = client.extract(b"png", CONTEXT, page_index=0)
    assert len(outcome.listings) == 2


def test_unparseable_output_gets_one_strict_retry():
    client, completions = make_client([completion("sorry, I cannot read this"), completion(GOOD)])
    outcome = client.extract(b"png", CONTEXT, page_index=0)

    assert outcome.strict_retry_used is True
    assert len(completions.calls) == 2
    strict_prompt = completions.calls[1]["messages"][1]["content"][0]["text"]
    assert "could not be parsed" in strict_prompt


def test_second_invalid_output_is_invalid_response():
    client, completions = make_client([completion("nope"), completion('{"rows": []}')])
    with pytest.raises(ExtractionError) as exc:
        client.extract(b"png", CONTEXT, page_index=0)
    assert exc.value.kind is ExtractionErrorKind.INVALID_RESPONSE
    assert len(completions.calls) == 2


def test_truncated_completion_is_invalid():
    client, _ = make_client([completion('{"products": [', finish_reason="length"), completion(GOOD)])
    outcome = client.extract(b"png", CONTEXT, page_index=0)
    assert outcome.strict_retry_used is True


def test_oversized_response_is_rejected():
    client, _ = make_client([completion(GOOD), completion(GOOD)], max_response_chars=10)
    with pytest.raises(ExtractionError) as exc:
        client.extract(b"png", CONTEXT, page_index=0)
    assert exc.value.kind is ExtractionErrorKind.INVALID_RESPONSE


def test_rate_limit_maps_to_quota_with_retry_after():
    response = httpx.Response(429, request=REQUEST, headers={"retry-after": "12"})
    error = openai.RateLimitError("slow down", response=response, body=None)
    client, completions = make_client([error])

    with pytest.raises(ExtractionError) as exc:
        client.extract(b"png", CONTEXT, page_index=0)
    assert exc.value.kind is ExtractionErrorKind.QUOTA_EXCEEDED
    assert exc.value.retry_after == 12.0
    assert len(completions.calls) == 1


@pytest.mark.parametrize(
    "error",
    [
        openai.InternalServerError("upstream", response=httpx.Response(503, request=REQUEST), body=None),
        openai.APITimeoutError(request=REQUEST),
        openai.APIConnectionError(request=REQUEST),
    ],
)
def test_server_and_network_errors_are_transient(error):
    client, _ = make_client([error])
    with pytest.raises(ExtractionError) as exc:
        client.extract(b"png", CONTEXT, page_index=0)
    assert exc.value.kind is ExtractionErrorKind.TRANSIENT
    assert exc.value.retryable


@pytest.mark.parametrize(
    "error",
    [
        openai.AuthenticationError("bad key", response=httpx.Response(401, request=REQUEST), body=None),
        openai.BadRequestError("image too large", response=httpx.Response(400, request=REQUEST), body=None),
        openai.NotFoundError("no such model", response=httpx.Response(404, request=REQUEST), body=None),
    ],
)
def test_rejected_request_is_not_retried(error):
    client, completions = make_client([error, completion(GOOD)])
    with pytest.raises(ExtractionError) as exc:
        client.extract(b"png", CONTEXT, page_index=0)
    assert exc.value.kind is ExtractionErrorKind.REQUEST_REJECTED
    assert not exc.value.retryable
    assert "HTTP 4" in str(exc.value)
    assert len(completions.calls) == 1


def test_usage_and_cost_are_reported_per_page_and_in_total():
    client, _ = make_client(
        [completion("nope", prompt_tokens=1000, completion_tokens=100), completion(GOOD), completion(GOOD)],
        prompt_cost_per_1k=0.3,
        completion_cost_per_1k=2.5,
    )

    first = client.extract(b"png", CONTEXT, page_index=0)
    second = client.extract(b"png", CONTEXT, page_index=1)

    assert first.usage.calls == 2
    assert first.usage.prompt_tokens == 2200
    assert first.usage.completion_tokens == 400
    assert first.usage.cost == pytest.approx(2.2 * 0.3 + 0.4 * 2.5)
    assert second.usage.calls == 1
    assert second.usage.total_tokens == 1500
    totals = client.usage_totals()
    assert totals.calls == 3
    assert totals.total_tokens == 4100
    assert totals.cost == pytest.approx(first.usage.cost + second.usage.cost)


def test_failed_page_still_reports_spent_tokens():
    client, _ = make_client([completion("nope"), completion("still nope")], prompt_cost_per_1k=1.0)
    with pytest.raises(ExtractionError) as exc:
        client.extract(b"png", CONTEXT, page_index=0)
    assert exc.value.usage.calls == 2
    assert exc.value.usage.prompt_tokens == 2400
    assert exc.value.usage.cost == pytest.approx(2.4)
    assert client.usage_totals().calls == 2


def test_prompt_carries_store_context():
    prompt = build_prompt(CONTEXT)
    assert "Store: iki" in prompt
    assert "IKI (LT grocery)." in prompt
    assert "pieno produktai" in prompt
    assert "previous answer" not in prompt
