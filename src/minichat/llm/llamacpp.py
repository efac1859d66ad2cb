"""
llama.cpp server client.

Sends fully formatted prompts to the server's ``/completion`` endpoint and
cleans template tokens out of the reply.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from minichat.exceptions import CollaboratorFailure
from minichat.llm.base import CompletionResult, InferenceClient
from minichat.llm.prompt import STOP_SEQUENCES

logger = logging.getLogger(__name__)

_TRAILING_TURN = re.compile(r"<\|eot_id\|>.*$", re.DOTALL)
_HEADER = re.compile(r"<\|start_header_id\|>.*?<\|end_header_id\|>")


def clean_completion(text: str) -> str:
    """Drop everything after the first end-of-turn and any stray headers."""
    text = _TRAILING_TURN.sub("", text)
    text = _HEADER.sub("", text)
    return text.strip()


@dataclass
class SamplingParams:
    """Sampling parameters sent with every completion request."""

    temperature: float = 0.3
    top_p: float = 0.92
    min_p: float = 0.05
    top_k: int = 40
    n_predict: int = 2048
    repeat_penalty: float = 1.15
    presence_penalty: float = 0.35
    frequency_penalty: float = 0.35
    stop: list[str] = field(default_factory=lambda: list(STOP_SEQUENCES))

    def to_payload(self) -> dict[str, Any]:
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "min_p": self.min_p,
            "top_k": self.top_k,
            "n_predict": self.n_predict,
            "repeat_penalty": self.repeat_penalty,
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
            "stop": self.stop,
        }


class LlamaCppClient(InferenceClient):
    """HTTP client for a llama.cpp completion server."""

    def __init__(
        self,
        base_url: str = "http://localhost:8080",
        params: SamplingParams | None = None,
        timeout: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.params = params or SamplingParams()
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "LlamaCppClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def complete(self, prompt: str) -> CompletionResult:
        """
        Request a completion.

        Args:
            prompt: Fully formatted prompt

        Returns:
            Cleaned completion

        Raises:
            CollaboratorFailure: On transport errors, non-2xx answers or a
                payload without ``content``
        """
        payload = {"prompt": prompt, **self.params.to_payload()}
        start = time.monotonic()
        try:
            response = self._client.post("/completion", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise CollaboratorFailure(
                "inference server", f"HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise CollaboratorFailure("inference server", str(e)) from e

        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, str):
            raise CollaboratorFailure("inference server", "response has no content")

        duration_ms = (time.monotonic() - start) * 1000
        logger.info(f"Completion received in {duration_ms:.0f}ms")
        return CompletionResult(
            content=clean_completion(content),
            duration_ms=duration_ms,
            raw_response=data,
        )
