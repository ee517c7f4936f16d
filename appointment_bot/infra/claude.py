"""
Claude API Client

Manages Anthropic API connections with async support, retry logic,
and model fallback. ClaudeResponder wraps the client as the assistant's
generative responder: bounded by a timeout, never raising.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from anthropic import AsyncAnthropic, APIError, RateLimitError, APIConnectionError

from appointment_bot.config import settings
from appointment_bot.core.phone import mask_phone

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = (
    "Sorry, I'm having trouble answering right now. "
    "Please send your message again in a few minutes."
)


class ClaudeClientError(Exception):
    """Raised when Claude API call fails."""
    pass


@dataclass
class ClaudeResponse:
    """Response from Claude API."""
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    stop_reason: str
    latency_ms: float


class ClaudeClient:
    """
    Async Claude API client wrapper.

    Features:
    - Automatic retries with exponential backoff on rate limits and
      connection errors
    - Model fallback on any other failure
    """

    _instance: Optional["ClaudeClient"] = None

    def __init__(self, api_key: Optional[str] = None):
        """Initialize Claude client.

        Args:
            api_key: Anthropic API key (defaults to settings)
        """
        self.api_key = api_key or settings.anthropic_api_key
        if not self.api_key:
            raise ClaudeClientError("Anthropic API key is required (ANTHROPIC_API_KEY)")

        self._client = AsyncAnthropic(api_key=self.api_key)
        self._default_model = settings.claude_model
        self._fallback_model = settings.claude_fallback_model

        logger.info(f"ClaudeClient initialized with model={self._default_model}")

    @classmethod
    def get_instance(cls) -> "ClaudeClient":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)."""
        cls._instance = None

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 600,
        temperature: float = 0.3,
        use_fallback_on_error: bool = True,
    ) -> ClaudeResponse:
        """
        Generate a response from Claude.

        Args:
            prompt: User message
            system_prompt: System prompt (optional)
            model: Model to use (defaults to settings.claude_model)
            max_tokens: Maximum tokens in response
            temperature: Sampling temperature
            use_fallback_on_error: Try fallback model on failure

        Returns:
            ClaudeResponse with generated content

        Raises:
            ClaudeClientError: If API call fails after retries
        """
        model = model or self._default_model
        start_time = time.time()

        messages = [{"role": "user", "content": prompt}]

        try:
            response = await self._call_with_retry(
                messages=messages,
                system=system_prompt,
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
            )

            latency_ms = (time.time() - start_time) * 1000

            return ClaudeResponse(
                content=response.content[0].text,
                model=model,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                stop_reason=response.stop_reason,
                latency_ms=latency_ms,
            )

        except (APIError, ClaudeClientError, IndexError, AttributeError) as e:
            if use_fallback_on_error and model != self._fallback_model:
                logger.warning(f"Primary model failed, trying fallback: {e}")
                return await self.generate(
                    prompt=prompt,
                    system_prompt=system_prompt,
                    model=self._fallback_model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    use_fallback_on_error=False,
                )
            raise ClaudeClientError(f"Claude API call failed: {e}") from e

    async def _call_with_retry(
        self,
        messages: list[dict],
        system: Optional[str],
        model: str,
        max_tokens: int,
        temperature: float,
        max_retries: int = 3,
    ) -> Any:
        """Call API with exponential backoff retry."""
        last_error = None

        for attempt in range(max_retries):
            try:
                kwargs: dict[str, Any] = {
                    "model": model,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                    "messages": messages,
                }
                if system:
                    kwargs["system"] = system

                return await self._client.messages.create(**kwargs)

            except RateLimitError as e:
                last_error = e
                wait_time = 2 ** attempt
                logger.warning(f"Rate limited, waiting {wait_time}s (attempt {attempt + 1})")
                await asyncio.sleep(wait_time)

            except APIConnectionError as e:
                last_error = e
                wait_time = 2 ** attempt
                logger.warning(f"Connection error, retrying in {wait_time}s (attempt {attempt + 1})")
                await asyncio.sleep(wait_time)

        raise last_error or ClaudeClientError("Max retries exceeded")

    async def close(self) -> None:
        """Close the client."""
        await self._client.close()


# Singleton accessor
async def get_claude_client() -> ClaudeClient:
    """Get Claude client singleton instance."""
    return ClaudeClient.get_instance()


class ClaudeResponder:
    """
    Generative responder for the conversation state machine.

    respond() always returns text: on timeout, configuration errors or
    API failures it returns the fixed apology.
    """

    def __init__(
        self,
        system_prompt: str,
        client: Optional[ClaudeClient] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """Initialize responder.

        Args:
            system_prompt: Assistant persona and rules
            client: Optional Claude client (for testing)
            timeout_seconds: Per-call bound (defaults to settings)
        """
        self.system_prompt = system_prompt
        self._client = client
        self.timeout_seconds = timeout_seconds or settings.responder_timeout_seconds

    async def _get_client(self) -> ClaudeClient:
        """Get or create Claude client."""
        if self._client is None:
            self._client = await get_claude_client()
        return self._client

    async def respond(self, context: str, patient_phone: str) -> str:
        """
        Generate the assistant's next message.

        Args:
            context: Rendered conversation (plus grounding block on the second pass)
            patient_phone: Used for log correlation only

        Returns:
            Reply text, or APOLOGY_MESSAGE on any failure
        """
        try:
            client = await self._get_client()
            response = await asyncio.wait_for(
                client.generate(prompt=context, system_prompt=self.system_prompt),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Responder timed out after {self.timeout_seconds}s for {mask_phone(patient_phone)}"
            )
            return APOLOGY_MESSAGE
        except ClaudeClientError as e:
            logger.error(f"Responder failed for {mask_phone(patient_phone)}: {e}")
            return APOLOGY_MESSAGE

        text = (response.content or "").strip()
        return text or APOLOGY_MESSAGE
