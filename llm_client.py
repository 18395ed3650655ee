"""
LLM capability used by the extractor, dialog graph and itinerary generator.

Everything that needs a model goes through `LLMClient.complete(prompt, schema)`
and gets back an instance of the requested pydantic schema, or one of:

- RateLimited      provider throttled the call
- UpstreamTimeout  no answer within LLM_TIMEOUT_SECONDS
- InvalidResponse  output did not match the schema
- UpstreamFailure  any other transport/provider error

`GeminiLLMClient` is the production implementation (langchain-google-genai).
Tests substitute a scripted fake with the same method.
"""

import asyncio
from typing import Optional, Protocol, Type, TypeVar

from langchain_core.exceptions import OutputParserException
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import BaseModel, Field, ValidationError

import config
from errors import InvalidResponse, RateLimited, UpstreamFailure, UpstreamTimeout
from logger_config import setup_logger

logger = setup_logger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class PromptPayload(BaseModel):
    """One structured LLM request."""
    task: str = Field(..., description="Short label used in logs, e.g. 'extract_intent'")
    system: str = Field(..., description="System instructions")
    user: str = Field(..., description="User-facing content / data for this call")


class LLMClient(Protocol):
    async def complete(self, prompt: PromptPayload, schema: Type[SchemaT]) -> SchemaT:
        ...


# =============================================================================
# Error mapping
# =============================================================================

_RATE_LIMIT_MARKERS = ("429", "rate limit", "rate-limit", "resource exhausted", "resource_exhausted", "quota")
_TIMEOUT_MARKERS = ("timeout", "timed out", "deadline exceeded", "deadline_exceeded")


def map_provider_error(exc: Exception) -> UpstreamFailure:
    """Translate a provider exception into the capability's error variants."""
    text = f"{type(exc).__name__}: {exc}".lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return RateLimited(str(exc))
    if any(marker in text for marker in _TIMEOUT_MARKERS):
        return UpstreamTimeout(str(exc))
    return UpstreamFailure(str(exc))


# =============================================================================
# Gemini implementation
# =============================================================================

class GeminiLLMClient:
    """Structured-output Gemini client. The chat model is created on first use."""

    def __init__(
        self,
        model: str = config.GEMINI_MODEL,
        temperature: float = config.LLM_TEMPERATURE,
        timeout: float = config.LLM_TIMEOUT_SECONDS,
        api_key: Optional[str] = None,
    ):
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self._api_key = api_key
        self._llm = None

    def _get_llm(self) -> ChatGoogleGenerativeAI:
        """Get or create the chat model. Raises error if API key not set."""
        if self._llm is None:
            api_key = self._api_key or config.GOOGLE_API_KEY
            if not api_key:
                raise ValueError("GOOGLE_API_KEY environment variable is required")
            self._llm = ChatGoogleGenerativeAI(
                model=self.model,
                google_api_key=api_key,
                temperature=self.temperature,
            )
        return self._llm

    async def complete(self, prompt: PromptPayload, schema: Type[SchemaT]) -> SchemaT:
        messages = [
            SystemMessage(content=prompt.system),
            HumanMessage(content=prompt.user),
        ]
        structured_llm = self._get_llm().with_structured_output(schema)

        try:
            result = await asyncio.wait_for(structured_llm.ainvoke(messages), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout(f"{prompt.task}: no response within {self.timeout}s") from e
        except (ValidationError, OutputParserException) as e:
            raise InvalidResponse(f"{prompt.task}: {e}") from e
        except Exception as e:
            raise map_provider_error(e) from e

        if result is None:
            raise InvalidResponse(f"{prompt.task}: model returned no structured output")
        if not isinstance(result, schema):
            try:
                result = schema.model_validate(result)
            except ValidationError as e:
                raise InvalidResponse(f"{prompt.task}: {e}") from e
        return result


# =============================================================================
# Retry helper
# =============================================================================

async def complete_with_retry(
    llm: LLMClient,
    prompt: PromptPayload,
    schema: Type[SchemaT],
    max_retries: int = config.LLM_MAX_RETRIES,
    delay_base: float = config.LLM_RETRY_DELAY_BASE,
) -> SchemaT:
    """
    Call the LLM with retry logic for transient failures.

    RateLimited, UpstreamTimeout and other UpstreamFailures are retried with
    exponential backoff. InvalidResponse is raised immediately so the caller
    can retry with a corrective prompt instead.
    """
    last_exception: Optional[UpstreamFailure] = None

    for attempt in range(max_retries):
        try:
            return await llm.complete(prompt, schema)

        except RateLimited as e:
            last_exception = e
            wait_time = delay_base * (2 ** (attempt + 1))
            logger.warning(f"[{prompt.task}] Rate limited, waiting {wait_time}s before retry {attempt + 1}/{max_retries}")

        except UpstreamTimeout as e:
            last_exception = e
            wait_time = delay_base * (2 ** attempt)
            logger.warning(f"[{prompt.task}] LLM timeout, waiting {wait_time}s before retry {attempt + 1}/{max_retries}")

        except UpstreamFailure as e:
            last_exception = e
            wait_time = delay_base * (2 ** attempt)
            logger.warning(f"[{prompt.task}] LLM error: {e}, waiting {wait_time}s before retry {attempt + 1}/{max_retries}")

        if attempt < max_retries - 1:
            await asyncio.sleep(wait_time)

    logger.error(f"[{prompt.task}] All {max_retries} LLM attempts failed: {last_exception}")
    if last_exception is None:
        raise UpstreamFailure(f"{prompt.task}: no attempts made")
    raise last_exception
