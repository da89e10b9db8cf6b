"""Tests for storyforge.llm — HttpLLM wire formats and error classification."""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from storyforge.llm import HttpLLM, LLMError


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


async def _call(llm: HttpLLM, body: dict, status: int = 200) -> tuple[str, AsyncMock]:
    mock_post = AsyncMock(return_value=_mock_response(body, status))
    with patch("httpx.AsyncClient.post", mock_post):
        text = await llm("extraction", "Extract the characters.")
    return text, mock_post


# ---------------------------------------------------------------------------
# HttpLLM: KoboldCpp format
# ---------------------------------------------------------------------------

class TestHttpLLMKoboldCpp:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(provider_url="http://localhost:5001", max_tokens=2048)

    async def test_returns_completion_text(self, llm: HttpLLM) -> None:
        text, _ = await _call(llm, {"results": [{"text": '{"characters": []}'}]})
        assert text == '{"characters": []}'

    async def test_request_shape(self, llm: HttpLLM) -> None:
        _, mock_post = await _call(llm, {"results": [{"text": "ok"}]})
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"
        assert mock_post.call_args.kwargs["json"] == {
            "prompt": "Extract the characters.",
            "max_length": 2048,
        }

    async def test_no_auth_header_without_api_key(self, llm: HttpLLM) -> None:
        _, mock_post = await _call(llm, {"results": [{"text": "ok"}]})
        assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    async def test_bearer_token_with_api_key(self) -> None:
        llm = HttpLLM(provider_url="http://localhost:5001/", api_key="secret")
        _, mock_post = await _call(llm, {"results": [{"text": "ok"}]})
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer secret"
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"

    async def test_connect_error_is_retryable(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Cannot connect") as exc_info:
                await llm("extraction", "prompt")
        assert exc_info.value.retryable

    async def test_timeout_is_retryable(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.TimeoutException("timeout"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="timed out") as exc_info:
                await llm("extraction", "prompt")
        assert exc_info.value.retryable

    @pytest.mark.parametrize("status,retryable", [
        (503, True),
        (500, True),
        (429, True),
        (401, False),
        (400, False),
    ])
    async def test_http_errors(self, llm: HttpLLM, status: int, retryable: bool) -> None:
        with pytest.raises(LLMError, match=f"HTTP {status}") as exc_info:
            await _call(llm, {}, status=status)
        assert exc_info.value.retryable is retryable

    async def test_malformed_response(self, llm: HttpLLM) -> None:
        with pytest.raises(LLMError, match="Unexpected response format"):
            await _call(llm, {"unexpected": "format"})

    async def test_non_json_body(self, llm: HttpLLM) -> None:
        resp = _mock_response({})
        resp.json.side_effect = ValueError("Expecting value")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(LLMError, match="not JSON"):
                await llm("extraction", "prompt")

    async def test_dropped_connection_is_retryable(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.RemoteProtocolError("peer closed"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="request failed") as exc_info:
                await llm("extraction", "prompt")
        assert exc_info.value.retryable

    def test_unknown_format_rejected(self) -> None:
        with pytest.raises(ValueError, match="provider format"):
            HttpLLM(provider_url="http://localhost:5001", provider_format="grpc")


# ---------------------------------------------------------------------------
# HttpLLM: OpenAI format
# ---------------------------------------------------------------------------

class TestHttpLLMOpenAI:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(
            provider_url="http://localhost:8080",
            provider_format="openai",
            model="mistral-7b",
        )

    async def test_request_shape(self, llm: HttpLLM) -> None:
        _, mock_post = await _call(llm, {"choices": [{"text": "ok"}]})
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/completions"
        body = mock_post.call_args.kwargs["json"]
        assert body["model"] == "mistral-7b"
        assert body["max_tokens"] == 8192

    async def test_returns_completion_text(self, llm: HttpLLM) -> None:
        text, _ = await _call(llm, {"choices": [{"text": '{"genre": "noir"}'}]})
        assert text == '{"genre": "noir"}'

    async def test_kobold_shaped_response_rejected(self, llm: HttpLLM) -> None:
        with pytest.raises(LLMError, match="Unexpected response format"):
            await _call(llm, {"results": [{"text": "wrong backend"}]})
