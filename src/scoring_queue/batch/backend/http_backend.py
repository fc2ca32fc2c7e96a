"""OpenAI-compatible completion/embedding backend over httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from scoring_queue.batch.backend.base import Vector
from scoring_queue.queue.errors import (
    ConfigurationFailure,
    EmptyResultFailure,
    TransientItemFailure,
)
from scoring_queue.queue.failure_classifier import classify_message
from scoring_queue.queue.models import FailureClass

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_RETRIES = 2
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVER_ERROR = 500
_ERROR_BODY_PREVIEW = 300


class HttpCapabilityBackend:
    """Calls `/chat/completions` and `/embeddings` of an OpenAI-compatible API."""

    name = "http"

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str | None,
        completion_model: str,
        embedding_model: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.completion_model = completion_model
        self.embedding_model = embedding_model
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def complete(self, prompt: str, system_prompt: str) -> str:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload = self._post(
            "/chat/completions",
            {"model": self.completion_model, "messages": messages, "temperature": 0.2},
        )
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as error:
            raise EmptyResultFailure("Completion response has no message content.") from error
        if not isinstance(content, str) or not content.strip():
            raise EmptyResultFailure("Provider returned an empty completion.")
        return content.strip()

    def embed(self, text: str) -> Vector:
        payload = self._post("/embeddings", {"model": self.embedding_model, "input": text})
        try:
            vector = payload["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as error:
            raise EmptyResultFailure("Embedding response has no vector.") from error
        if not isinstance(vector, list) or not vector:
            raise EmptyResultFailure("Provider returned an empty embedding.")
        return [float(value) for value in vector]

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpCapabilityBackend:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise ConfigurationFailure(
                "Capability API key is missing. Set SCORING_QUEUE_CAPABILITY_API_KEY.",
            )
        try:
            response = self._client.post(
                path,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s", path)
            raise TransientItemFailure(f"timeout calling {path}") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s: %s", path, error)
            raise TransientItemFailure(f"network error calling {path}: {error}") from error

        if response.status_code in {HTTP_UNAUTHORIZED, HTTP_FORBIDDEN}:
            raise ConfigurationFailure(
                f"Capability provider rejected credentials (HTTP {response.status_code}).",
            )
        if (
            response.status_code == HTTP_TOO_MANY_REQUESTS
            or response.status_code >= HTTP_SERVER_ERROR
        ):
            raise TransientItemFailure(
                f"HTTP {response.status_code} from {path}: {_preview(response)}",
            )
        if not response.is_success:
            message = f"HTTP {response.status_code} from {path}: {_preview(response)}"
            if classify_message(message).failure_class == FailureClass.CONFIGURATION:
                raise ConfigurationFailure(message)
            raise TransientItemFailure(message)

        try:
            payload = response.json()
        except ValueError as error:
            raise EmptyResultFailure(f"Non-JSON response from {path}.") from error
        if not isinstance(payload, dict):
            raise EmptyResultFailure(f"Unexpected response shape from {path}.")
        return payload


def _preview(response: httpx.Response) -> str:
    return response.text[:_ERROR_BODY_PREVIEW].strip()
