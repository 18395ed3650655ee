import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import BaseModel

import config
from conftest import FakeLLM
from errors import InvalidResponse, RateLimited, UpstreamFailure, UpstreamTimeout
from llm_client import GeminiLLMClient, PromptPayload, complete_with_retry, map_provider_error


class Answer(BaseModel):
    answer: str


PROMPT = PromptPayload(task="answer_question", system="Be brief.", user="Is Rome warm in May?")


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

class TestMapProviderError:
    def test_rate_limit(self):
        assert isinstance(map_provider_error(Exception("429 Resource has been exhausted")), RateLimited)
        assert isinstance(map_provider_error(Exception("quota exceeded for model")), RateLimited)

    def test_timeout(self):
        assert isinstance(map_provider_error(Exception("Deadline Exceeded")), UpstreamTimeout)

    def test_other(self):
        error = map_provider_error(ConnectionError("connection reset"))
        assert type(error) is UpstreamFailure


# ---------------------------------------------------------------------------
# Retry helper
# ---------------------------------------------------------------------------

class TestCompleteWithRetry:
    def test_transient_failures_are_retried(self):
        llm = FakeLLM([RateLimited("slow down"), UpstreamTimeout("late"), {"answer": "Yes."}])
        result = asyncio.run(complete_with_retry(llm, PROMPT, Answer, max_retries=3, delay_base=0))
        assert result.answer == "Yes."
        assert len(llm.calls) == 3

    def test_invalid_response_is_not_retried(self):
        llm = FakeLLM([InvalidResponse("garbage"), {"answer": "Yes."}])
        with pytest.raises(InvalidResponse):
            asyncio.run(complete_with_retry(llm, PROMPT, Answer, max_retries=3, delay_base=0))
        assert len(llm.calls) == 1

    def test_last_error_raised_after_exhaustion(self):
        llm = FakeLLM([UpstreamFailure("a"), UpstreamFailure("b"), RateLimited("c")])
        with pytest.raises(RateLimited):
            asyncio.run(complete_with_retry(llm, PROMPT, Answer, max_retries=3, delay_base=0))
        assert len(llm.calls) == 3


# ---------------------------------------------------------------------------
# Gemini client
# ---------------------------------------------------------------------------

def _client_returning(side_effect=None, return_value=None):
    client = GeminiLLMClient(api_key="test-key", timeout=5)
    structured = MagicMock()
    structured.ainvoke = AsyncMock(side_effect=side_effect, return_value=return_value)
    chat_model = MagicMock()
    chat_model.with_structured_output.return_value = structured
    client._llm = chat_model
    return client, chat_model


class TestGeminiLLMClient:
    def test_missing_api_key(self, monkeypatch):
        monkeypatch.setattr(config, "GOOGLE_API_KEY", None)
        with pytest.raises(ValueError):
            GeminiLLMClient()._get_llm()

    def test_structured_result_returned(self):
        client, chat_model = _client_returning(return_value=Answer(answer="Yes."))
        result = asyncio.run(client.complete(PROMPT, Answer))
        assert result.answer == "Yes."
        chat_model.with_structured_output.assert_called_once_with(Answer)

    def test_dict_result_is_validated(self):
        client, _ = _client_returning(return_value={"answer": "Yes."})
        assert asyncio.run(client.complete(PROMPT, Answer)) == Answer(answer="Yes.")

    def test_none_is_invalid_response(self):
        client, _ = _client_returning(return_value=None)
        with pytest.raises(InvalidResponse):
            asyncio.run(client.complete(PROMPT, Answer))

    def test_bad_dict_is_invalid_response(self):
        client, _ = _client_returning(return_value={"reply": "Yes."})
        with pytest.raises(InvalidResponse):
            asyncio.run(client.complete(PROMPT, Answer))

    def test_provider_rate_limit(self):
        client, _ = _client_returning(side_effect=Exception("429 Too Many Requests"))
        with pytest.raises(RateLimited):
            asyncio.run(client.complete(PROMPT, Answer))

    def test_timeout(self):
        client, _ = _client_returning(side_effect=asyncio.TimeoutError())
        with pytest.raises(UpstreamTimeout):
            asyncio.run(client.complete(PROMPT, Answer))
