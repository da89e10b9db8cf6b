"""Text generator interface and its HTTP implementation.

Every stage asks the generator for text through one awaitable:

    async def __call__(self, stage: str, prompt: str) -> str: ...

The stage id travels with each call so that logs can tell the analysis
stages apart. Any object with that signature works; the tests script one
(StubLLM in conftest.py), production builds an HttpLLM from Settings.

HttpLLM makes exactly one request per call. Timeouts per attempt, backoff
and the retry budget belong to storyforge.retry, which reads
LLMError.retryable to decide whether another attempt is worthwhile.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import httpx

logger = logging.getLogger(__name__)

ProviderFormat = Literal["koboldcpp", "openai"]


class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


class LLMError(RuntimeError):
    """The generator could not produce text for a request.

    `retryable` is False when asking again cannot help, e.g. a rejected
    API key or a request the backend considers malformed.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class _Wire:
    label: str
    path: str
    length_field: str
    results_key: str
    sends_model: bool


_WIRES: dict[str, _Wire] = {
    # {"prompt", "max_length"} → {"results": [{"text"}]}
    "koboldcpp": _Wire("KoboldCpp", "/api/v1/generate", "max_length", "results", False),
    # {"prompt", "max_tokens", "model"} → {"choices": [{"text"}]}
    "openai": _Wire("OpenAI-compatible", "/v1/completions", "max_tokens", "choices", True),
}


def _is_permanent(status: int) -> bool:
    # 429 is a client error that goes away once the rate window passes
    return 400 <= status < 500 and status != 429


class HttpLLM:
    """One-shot completion requests against a KoboldCpp or OpenAI-style server.

    Args:
        provider_url:    Server root, e.g. "http://localhost:5001".
        api_key:         Sent as a bearer token when non-empty.
        provider_format: "koboldcpp" (default) or "openai".
        model:           Model name; only the openai format sends it.
        max_tokens:      Completion length requested from the backend.
        timeout:         Transport timeout for a single request, in seconds.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        max_tokens: int = 8192,
        timeout: float = 120.0,
    ) -> None:
        if provider_format not in _WIRES:
            raise ValueError(f"Unknown provider format: {provider_format!r}")
        self._root = provider_url.rstrip("/")
        self._wire = _WIRES[provider_format]
        self._api_key = api_key
        self._model = model
        self._max_tokens = max_tokens
        self._timeout = timeout

    @property
    def endpoint(self) -> str:
        return self._root + self._wire.path

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _body(self, prompt: str) -> dict[str, Any]:
        body: dict[str, Any] = {"prompt": prompt, self._wire.length_field: self._max_tokens}
        if self._wire.sends_model and self._model:
            body["model"] = self._model
        return body

    def _completion(self, data: Any) -> str:
        entries = data.get(self._wire.results_key) if isinstance(data, dict) else None
        first = entries[0] if isinstance(entries, list) and entries else None
        if not isinstance(first, dict) or "text" not in first:
            raise LLMError(f"Unexpected response format from {self._wire.label} backend")
        return first["text"]

    async def __call__(self, stage: str, prompt: str) -> str:
        url = self.endpoint
        logger.debug("generate stage=%s url=%s prompt_chars=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=self._body(prompt), headers=self._headers())
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise LLMError(
                f"Generator at {self._root} returned HTTP {status}",
                retryable=not _is_permanent(status),
            ) from e
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to generator at {self._root}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"Generator request timed out after {self._timeout}s") from e
        except httpx.RequestError as e:
            raise LLMError(f"Generator request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError(
                f"Unexpected response format from {self._wire.label} backend: body is not JSON"
            ) from e
        text = self._completion(data)
        logger.debug("generated stage=%s chars=%d", stage, len(text))
        return text
