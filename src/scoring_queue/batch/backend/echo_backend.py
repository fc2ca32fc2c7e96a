"""Deterministic offline backend for local runs and tests."""

from __future__ import annotations

import hashlib
import math
from array import array
from dataclasses import dataclass

from scoring_queue.batch.backend.base import Vector


@dataclass(slots=True)
class EchoCapabilityBackend:
    """Templated completions and hashed character n-gram embeddings."""

    dimensions: int = 384
    ngram_size: int = 3
    name: str = "echo"

    def complete(self, prompt: str, system_prompt: str) -> str:
        digest = hashlib.sha1(prompt.encode("utf-8"), usedforsecurity=False).digest()  # noqa: S324
        score = digest[0] * 100 // 255
        return (
            f"Guideline Alignment Score: {score}\n"
            f"Detailed Analysis: evaluated {len(prompt)} characters"
            f"{' with system instructions' if system_prompt else ''}.\n"
            "Suggested Improvements: none (offline echo backend)."
        )

    def embed(self, text: str) -> Vector:
        normalized = (text or "").lower().strip()
        vector = array("f", [0.0]) * self.dimensions
        if not normalized:
            return list(vector)

        if len(normalized) < self.ngram_size:
            normalized = normalized + " " * (self.ngram_size - len(normalized))

        for index in range(len(normalized) - self.ngram_size + 1):
            ngram = normalized[index : index + self.ngram_size]
            digest = hashlib.sha1(ngram.encode("utf-8"), usedforsecurity=False).digest()  # noqa: S324
            bucket = int.from_bytes(digest[:4], byteorder="little") % self.dimensions
            vector[bucket] += 1.0

        norm = math.sqrt(sum(value * value for value in vector))
        if norm > 0:
            vector = array("f", (value / norm for value in vector))
        return list(vector)

    def close(self) -> None:
        return None
