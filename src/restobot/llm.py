"""
Completion client and response generator.

Provides:
- OpenAI (or Groq, OpenAI-compatible) chat completion client
- Optional startup model validation
- Per-call reply generation over the conversation store
- Fallback apology on provider failure
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog
from openai import AsyncOpenAI

from src.restobot.config import get_config
from src.restobot.conversation import ConversationStore

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"


class ProviderFailure(Exception):
    """The completion service was unreachable or returned something unusable."""
    pass


@dataclass
class LLMResponse:
    """Response from LLM."""
    text: str
    total_ms: float = 0.0
    finish_reason: Optional[str] = None


class CompletionClient(Protocol):
    async def complete(self, messages: List[Dict[str, str]]) -> LLMResponse:
        ...


def _base_url(provider: str) -> str:
    return GROQ_BASE_URL if provider == "groq" else OPENAI_BASE_URL


async def validate_model(api_key: str, model_name: str, base_url: str = OPENAI_BASE_URL) -> bool:
    """
    Fail fast at startup when `model_name` is not served at `base_url`.

    Raises:
        SystemExit: the API is unreachable, rejects the key, or does not list the model
    """
    log = logger.bind(model=model_name, base_url=base_url)
    log.info("Checking LLM model")

    try:
        async with httpx.AsyncClient(base_url=base_url, timeout=10.0) as http:
            response = await http.get("/models", headers={"Authorization": f"Bearer {api_key}"})
    except httpx.RequestError as e:
        log.error("LLM API unreachable", error=str(e))
        raise SystemExit(f"Cannot reach {base_url}: {e}")

    if response.status_code != 200:
        log.error("LLM API refused the model listing", status_code=response.status_code)
        raise SystemExit(f"{base_url}/models returned HTTP {response.status_code}; check the API key")

    served = {m.get("id") for m in response.json().get("data", []) if isinstance(m, dict)}
    if model_name not in served:
        log.error("LLM model not served", served=sorted(str(m) for m in served)[:10])
        raise SystemExit(f"Model '{model_name}' is not available at {base_url}")

    log.info("LLM model available")
    return True


class OpenAICompletionClient:
    """
    Chat completion client over the OpenAI-compatible API.

    Every failure mode (network, non-2xx, timeout, malformed body) surfaces as
    `ProviderFailure`.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.llm_model
        self.max_tokens = config.llm_max_tokens
        self.temperature = config.llm_temperature

        self._client = client or AsyncOpenAI(
            api_key=config.llm_api_key,
            base_url=_base_url(config.llm_provider),
            timeout=config.llm_timeout_seconds,
            max_retries=0,
        )

    async def validate_model(self) -> bool:
        return await validate_model(
            self.config.llm_api_key,
            self.model,
            _base_url(self.config.llm_provider),
        )

    async def complete(self, messages: List[Dict[str, str]]) -> LLMResponse:
        start_time = time.time()
        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as e:
            raise ProviderFailure(str(e)) from e

        try:
            choice = completion.choices[0]
            text = choice.message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise ProviderFailure(f"Malformed completion: {e}") from e

        if not isinstance(text, str) or not text.strip():
            raise ProviderFailure("Empty completion")

        return LLMResponse(
            text=text.strip(),
            total_ms=(time.time() - start_time) * 1000,
            finish_reason=getattr(choice, "finish_reason", None),
        )

    async def close(self) -> None:
        await self._client.close()


class ResponseGenerator:
    """
    Produces the assistant's next line for a call.

    The model always sees the full accumulated history. The user turn and the
    assistant turn are committed together on success; a failed attempt leaves
    the history untouched and yields the fixed apology instead.
    """

    def __init__(
        self,
        store: ConversationStore,
        client: CompletionClient,
        fallback_message: str,
    ):
        self._store = store
        self._client = client
        self.fallback_message = fallback_message

    async def reply(self, call_sid: str, user_utterance: str) -> str:
        log = logger.bind(call_sid=call_sid)
        history = self._store.get(call_sid)

        messages = history.get_messages()
        user_utterance = (user_utterance or "").strip()
        if user_utterance:
            messages.append({"role": "user", "content": user_utterance})

        try:
            response = await self._client.complete(messages)
        except ProviderFailure as e:
            log.error("LLM generation failed", error=str(e))
            return self.fallback_message

        # The call may have ended while the request was in flight.
        history = self._store.find(call_sid)
        if history is None:
            log.info("Discarding reply for ended call")
            return response.text

        if user_utterance:
            history.append("user", user_utterance)
        history.append("assistant", response.text)

        log.info(
            "AI reply",
            user_message=user_utterance,
            assistant_message=response.text,
            total_ms=round(response.total_ms, 2),
        )
        return response.text


async def initialize_llm(config: Optional[Any] = None) -> OpenAICompletionClient:
    """
    Create the completion client, validating the model when configured to.
    """
    if config is None:
        config = get_config()

    client = OpenAICompletionClient(config)
    if config.llm_validate_on_startup:
        await client.validate_model()
    return client
