from __future__ import annotations

import json

import allure
import httpx
import pytest

from scoring_queue.batch.backend import (
    CapabilityAdapter,
    CapabilityKind,
    EchoCapabilityBackend,
    HttpCapabilityBackend,
)
from scoring_queue.queue.errors import (
    ConfigurationFailure,
    EmptyResultFailure,
    TransientItemFailure,
)

pytestmark = [
    allure.epic("Batch Scoring"),
    allure.feature("Capability Backends"),
]


def _backend(handler, *, api_key: str | None = "sk-test") -> HttpCapabilityBackend:
    return HttpCapabilityBackend(
        base_url="https://llm.example.com/v1/",
        api_key=api_key,
        completion_model="completion-model",
        embedding_model="embedding-model",
        transport=httpx.MockTransport(handler),
    )


def test_http_backend_sends_openai_style_requests() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/chat/completions"):
            return httpx.Response(
                200,
                json={"choices": [{"message": {"content": "  Score: 80  "}}]},
            )
        return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

    with _backend(handler) as backend:
        assert backend.complete("Evaluate this", "Be strict") == "Score: 80"
        assert backend.embed("hello") == [0.1, 0.2, 0.3]

    assert [request.url.path for request in seen] == [
        "/v1/chat/completions",
        "/v1/embeddings",
    ]
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    body = json.loads(seen[0].content)
    assert body["model"] == "completion-model"
    assert body["messages"] == [
        {"role": "system", "content": "Be strict"},
        {"role": "user", "content": "Evaluate this"},
    ]
    assert json.loads(seen[1].content) == {"model": "embedding-model", "input": "hello"}


def test_http_backend_requires_api_key_before_calling() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    backend = _backend(handler, api_key=None)
    with pytest.raises(ConfigurationFailure, match="API key is missing"):
        backend.embed("hello")
    backend.close()


@pytest.mark.parametrize(
    ("status_code", "body", "expected"),
    [
        (401, "bad key", ConfigurationFailure),
        (403, "forbidden", ConfigurationFailure),
        (429, "slow down", TransientItemFailure),
        (503, "overloaded", TransientItemFailure),
        (400, "invalid api key supplied", ConfigurationFailure),
        (400, "context length exceeded", TransientItemFailure),
    ],
)
def test_http_backend_classifies_error_statuses(
    status_code: int,
    body: str,
    expected: type[Exception],
) -> None:
    backend = _backend(lambda request: httpx.Response(status_code, text=body))

    with pytest.raises(expected):
        backend.complete("prompt", "")
    backend.close()


def test_http_backend_treats_network_errors_as_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    backend = _backend(handler)
    with pytest.raises(TransientItemFailure, match="network error"):
        backend.embed("hello")
    backend.close()


@pytest.mark.parametrize(
    "payload",
    [
        {"choices": []},
        {"choices": [{"message": {"content": "   "}}]},
        ["not", "an", "object"],
    ],
)
def test_http_backend_rejects_empty_completions(payload: object) -> None:
    backend = _backend(lambda request: httpx.Response(200, json=payload))

    with pytest.raises(EmptyResultFailure):
        backend.complete("prompt", "")
    backend.close()


def test_adapter_isolates_item_failures_but_propagates_configuration() -> None:
    class _Backend:
        name = "fake"

        def __init__(self) -> None:
            self.errors: list[Exception] = [
                TransientItemFailure("HTTP 503"),
                KeyError("choices"),
                ConfigurationFailure("HTTP 401"),
            ]

        def complete(self, prompt: str, system_prompt: str) -> str:
            return ""

        def embed(self, text: str) -> list[float]:
            raise self.errors.pop(0)

        def close(self) -> None:
            return None

    adapter = CapabilityAdapter(_Backend())

    empty = adapter.invoke(CapabilityKind.COMPLETION, "prompt")
    assert (empty.ok, empty.failure_kind) == (False, "empty_result")

    transient = adapter.invoke(CapabilityKind.EMBEDDING, "text")
    assert (transient.ok, transient.failure_kind, transient.error) == (
        False,
        "transient",
        "HTTP 503",
    )

    unexpected = adapter.invoke(CapabilityKind.EMBEDDING, "text")
    assert unexpected.failure_kind == "transient"
    assert unexpected.error is not None
    assert unexpected.error.startswith("KeyError")

    with pytest.raises(ConfigurationFailure):
        adapter.invoke(CapabilityKind.EMBEDDING, "text")


def test_echo_backend_is_deterministic_and_normalized() -> None:
    backend = EchoCapabilityBackend(dimensions=16)

    first = backend.embed("Guideline alignment")
    second = backend.embed("guideline ALIGNMENT ")
    assert first == second
    assert len(first) == 16
    assert sum(value * value for value in first) == pytest.approx(1.0, rel=1e-5)
    assert backend.embed("") == [0.0] * 16

    completion = backend.complete("Evaluate", "system")
    assert completion == backend.complete("Evaluate", "system")
    assert completion.startswith("Guideline Alignment Score: ")

    outcome = CapabilityAdapter(backend).invoke(CapabilityKind.EMBEDDING, "short")
    assert outcome.ok is True
    assert outcome.value == backend.embed("short")
