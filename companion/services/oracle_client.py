# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Oracle clients: the transport that turns a prompt into decision text.

An oracle client performs exactly one request per call and honours a
CancellationToken. It knows nothing about turns or single-flight; the
orchestrator owns that. Three implementations ship:

- OpenAIOracleClient: OpenAI chat completions (or any OpenAI-compatible
  server via ``base_url``) with bounded retry of transient errors
- LocalOracleClient: Ollama ``/api/generate`` or an OpenAI-compatible
  chat endpoint over plain httpx
- StubOracleClient: offline client that always answers the same text
"""

import asyncio
import time
from typing import Awaitable, Optional, Protocol, TypeVar, runtime_checkable

import openai
from httpx import AsyncClient, HTTPError, HTTPStatusError, TimeoutException
from openai import AsyncOpenAI

from companion.config import Settings
from companion.logging import StructuredLogger
from companion.metrics import get_metrics_collector
from companion.resilience import RetryConfig, with_retry

logger = StructuredLogger(__name__)

T = TypeVar('T')

SYSTEM_PROMPT = """You are an expert combat assistant for a turn-based tactical RPG.
Your role is to analyze the combat situation and choose the best action for the current unit.

RESPONSE FORMAT:
You must respond with a JSON object containing your chosen action. Examples:

For attacks/abilities:
{"action": "ability", "ability_name": "Power Sword Strike", "target_id": "enemy_1", "reasoning": "Highest damage to wounded target", "confidence": 85}

For movement:
{"action": "move", "target_position": {"x": 15.0, "y": 10.0}, "reasoning": "Moving to cover"}

To move and then attack from the new position:
{"action": "move_and_attack", "target_position": {"x": 12.0, "y": 8.0}, "ability_name": "Lasgun Shot", "target_id": "enemy_2", "reasoning": "Get line of sight"}

For using items:
{"action": "use_item", "item_name": "Medicae Kit", "target_id": "ally_2", "reasoning": "Healing wounded ally"}

To wait and act later in the round:
{"action": "delay", "reasoning": "Let the tank engage first"}

To end turn:
{"action": "end_turn", "reasoning": "No AP remaining"}

TACTICAL PRINCIPLES:
1. Prioritize eliminating high-threat targets (psykers, heavy weapons)
2. Use cover whenever possible
3. Focus fire on wounded enemies
4. Protect wounded allies
5. Consider action economy: some abilities have better AP efficiency

IMPORTANT:
- Only use abilities that are marked as available
- Target IDs are provided in the enemy/ally lists
- Check AP costs before choosing abilities
- Respond ONLY with the JSON object, no additional text"""

STUB_RESPONSE = '{"action": "end_turn", "reasoning": "Stub oracle always ends the turn", "confidence": 100}'


class OracleClientError(Exception):
    """Base exception for oracle client errors."""
    pass


class OracleConfigurationError(OracleClientError):
    """Raised when the oracle client configuration is invalid."""
    pass


class OracleTimeoutError(OracleClientError):
    """Raised when the oracle does not answer in time."""
    pass


class OracleTransportError(OracleClientError):
    """Raised when the request fails or the answer is unusable."""
    pass


class OracleCancelledError(OracleClientError):
    """Raised when the caller cancelled the request via its token."""
    pass


class CancellationToken:
    """Cooperative cancellation flag shared between caller and client."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until cancel() is called."""
        await self._event.wait()


async def run_cancellable(
    awaitable: Awaitable[T],
    cancel_token: CancellationToken,
    timeout: Optional[float] = None
) -> T:
    """Await ``awaitable`` unless the token fires or the timeout elapses.

    The underlying request is cancelled in both of those cases.

    Args:
        awaitable: The request to run
        cancel_token: Token the caller may fire at any time
        timeout: Seconds to wait, or None for no limit

    Returns:
        Result of the awaitable

    Raises:
        OracleCancelledError: The token fired first (or was already set)
        OracleTimeoutError: The timeout elapsed first
    """
    request = asyncio.ensure_future(awaitable)
    if cancel_token.cancelled:
        request.cancel()
        raise OracleCancelledError("Request cancelled before it started")

    waiter = asyncio.ensure_future(cancel_token.wait())
    try:
        done, _ = await asyncio.wait(
            {request, waiter},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in (request, waiter):
            if not task.done():
                task.cancel()

    if cancel_token.cancelled:
        raise OracleCancelledError("Request cancelled")
    if request in done:
        return request.result()
    raise OracleTimeoutError(f"Oracle did not answer within {timeout}s")


@runtime_checkable
class OracleClient(Protocol):
    """One prompt in, one raw decision text out."""

    async def request_action(self, prompt: str, cancel_token: CancellationToken) -> str:
        """Send the prompt and return the oracle's raw answer.

        Raises:
            OracleTimeoutError, OracleTransportError, OracleCancelledError
        """
        ...


def _record_call(duration_ms: float, error_type: Optional[str] = None) -> None:
    collector = get_metrics_collector()
    if collector:
        collector.record_latency("oracle_call", duration_ms)
        if error_type:
            collector.record_error(error_type)


class OpenAIOracleClient:
    """Oracle backed by the OpenAI chat completions API.

    This client:
    - Sends the shared system prompt plus the battle prompt
    - Retries rate limits, server errors and connection failures with
      exponential backoff (timeouts and cancellation are never retried)
    - Maps openai exceptions onto the OracleClientError hierarchy
    - Works against OpenAI-compatible servers when ``base_url`` is set
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        timeout: float = 30,
        max_tokens: int = 500,
        temperature: float = 0.3,
        base_url: Optional[str] = None,
        max_retries: int = 2,
        retry_delay_base: float = 0.5,
        retry_delay_max: float = 5.0,
        client: Optional[AsyncOpenAI] = None
    ):
        """Initialize the OpenAI oracle client.

        Args:
            api_key: OpenAI API key
            model: Model name
            timeout: Total seconds allowed for one request_action call
            max_tokens: Completion token limit
            temperature: Sampling temperature
            base_url: Optional OpenAI-compatible server URL
            max_retries: Maximum retry attempts for transient errors
            retry_delay_base: Base delay for exponential backoff (seconds)
            retry_delay_max: Maximum delay for exponential backoff (seconds)
            client: Pre-built AsyncOpenAI client (mainly for tests)

        Raises:
            OracleConfigurationError: If the API key is empty
        """
        if not api_key or api_key.strip() == "":
            raise OracleConfigurationError("API key cannot be empty")

        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_retries = max_retries
        # The SDK's own retries are disabled so backoff is governed here
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0
        )
        self.retry_config = RetryConfig(
            max_retries=max_retries,
            base_delay=retry_delay_base,
            max_delay=retry_delay_max,
            retryable_exceptions=(
                openai.RateLimitError,
                openai.InternalServerError,
                openai.APIConnectionError,
            )
        )
        self._complete_with_retry = with_retry(self.retry_config, "oracle_call")(self._complete)

        logger.info(
            f"Initialized OpenAIOracleClient with model={self.model}, timeout={self.timeout}s, "
            f"max_retries={self.max_retries}, base_url={base_url or 'default'}"
        )

    async def request_action(self, prompt: str, cancel_token: CancellationToken) -> str:
        start_time = time.time()
        try:
            content = await run_cancellable(
                self._complete_with_retry(prompt), cancel_token, self.timeout
            )
        except OracleCancelledError:
            logger.info("Oracle request cancelled")
            raise
        except OracleClientError as e:
            _record_call((time.time() - start_time) * 1000, f"oracle_{type(e).__name__}")
            raise
        except openai.AuthenticationError as e:
            _record_call((time.time() - start_time) * 1000, "oracle_auth_error")
            logger.error("Oracle authentication failed (non-retryable)")
            raise OracleConfigurationError("Invalid OpenAI API key") from e
        except openai.APIError as e:
            _record_call((time.time() - start_time) * 1000, "oracle_api_error")
            logger.error(
                "Oracle request failed",
                error_type=type(e).__name__,
                error=str(e)
            )
            raise OracleTransportError(f"Oracle request failed: {e}") from e

        duration_ms = (time.time() - start_time) * 1000
        _record_call(duration_ms)
        logger.info(
            "Oracle answered",
            response_length=len(content),
            duration_ms=f"{duration_ms:.2f}"
        )
        return content

    async def _complete(self, prompt: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature
            )
        except openai.APITimeoutError as e:
            # Subclass of APIConnectionError; converted so it is not retried
            raise OracleTimeoutError(f"Oracle request timed out: {e}") from e

        if not response.choices:
            raise OracleTransportError("Oracle returned no choices")
        content = response.choices[0].message.content
        if not content:
            raise OracleTransportError("Oracle returned empty content")
        return content

    async def aclose(self) -> None:
        await self.client.close()


class LocalOracleClient:
    """Oracle backed by a locally hosted model server.

    The request format is picked from the endpoint: anything containing
    ``/v1/`` or ``chat/completions`` is treated as OpenAI-compatible
    (LM Studio, llama.cpp server, ...), everything else as Ollama's
    ``/api/generate``.
    """

    def __init__(
        self,
        endpoint: str,
        model: str,
        timeout: float = 30,
        max_tokens: int = 500,
        temperature: float = 0.3,
        http_client: Optional[AsyncClient] = None
    ):
        if not endpoint:
            raise OracleConfigurationError("Local oracle endpoint cannot be empty")

        self.endpoint = endpoint
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._owns_client = http_client is None
        self.http_client = http_client or AsyncClient()

        logger.info(
            f"Initialized LocalOracleClient with endpoint={self.endpoint}, model={self.model}, "
            f"format={'chat' if self.is_chat_format else 'ollama'}"
        )

    @property
    def is_chat_format(self) -> bool:
        return "/v1/" in self.endpoint or "chat/completions" in self.endpoint

    def build_payload(self, prompt: str) -> dict:
        """Build the request body for the configured endpoint format."""
        if self.is_chat_format:
            return {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
            }
        return {
            "model": self.model,
            "prompt": f"{SYSTEM_PROMPT}\n\n{prompt}",
            "stream": False,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }

    async def request_action(self, prompt: str, cancel_token: CancellationToken) -> str:
        start_time = time.time()
        try:
            content = await run_cancellable(self._post(prompt), cancel_token, self.timeout)
        except OracleCancelledError:
            logger.info("Oracle request cancelled")
            raise
        except OracleClientError as e:
            _record_call((time.time() - start_time) * 1000, f"oracle_{type(e).__name__}")
            raise
        except TimeoutException as e:
            _record_call((time.time() - start_time) * 1000, "oracle_timeout")
            raise OracleTimeoutError(f"Local oracle timed out: {e}") from e
        except HTTPStatusError as e:
            _record_call((time.time() - start_time) * 1000, f"oracle_http_{e.response.status_code}")
            logger.error(
                "Local oracle returned an error status",
                status_code=e.response.status_code
            )
            raise OracleTransportError(
                f"Local oracle error: {e.response.status_code}"
            ) from e
        except (HTTPError, ValueError) as e:
            _record_call((time.time() - start_time) * 1000, "oracle_transport_error")
            logger.error(
                "Local oracle request failed",
                error_type=type(e).__name__,
                error=str(e)
            )
            raise OracleTransportError(f"Local oracle request failed: {e}") from e

        duration_ms = (time.time() - start_time) * 1000
        _record_call(duration_ms)
        logger.info(
            "Oracle answered",
            response_length=len(content),
            duration_ms=f"{duration_ms:.2f}"
        )
        return content

    async def _post(self, prompt: str) -> str:
        response = await self.http_client.post(
            self.endpoint,
            json=self.build_payload(prompt),
            timeout=self.timeout
        )
        response.raise_for_status()
        data = response.json()

        if self.is_chat_format:
            try:
                content = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError) as e:
                raise OracleTransportError("Malformed chat completion response") from e
        else:
            content = data.get("response") if isinstance(data, dict) else None

        if not content:
            raise OracleTransportError("Local oracle returned empty content")
        return content

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()


class StubOracleClient:
    """Offline oracle for development and tests.

    Always answers with ``response`` (an end-turn decision by default)
    after an optional delay. The delay honours the cancellation token.
    """

    def __init__(self, response: str = STUB_RESPONSE, delay: float = 0.0):
        self.response = response
        self.delay = delay
        self.calls = 0
        logger.info("Initialized StubOracleClient (no oracle calls will be made)")

    async def request_action(self, prompt: str, cancel_token: CancellationToken) -> str:
        self.calls += 1
        if self.delay > 0:
            await run_cancellable(asyncio.sleep(self.delay), cancel_token)
        elif cancel_token.cancelled:
            raise OracleCancelledError("Request cancelled")
        return self.response

    async def aclose(self) -> None:
        return None


def create_oracle_client(settings: Settings) -> OracleClient:
    """Build the oracle client selected by ``settings.oracle_provider``.

    Raises:
        OracleConfigurationError: If the provider is unknown or misconfigured
    """
    provider = settings.oracle_provider
    if provider == "openai":
        return OpenAIOracleClient(
            api_key=settings.oracle_api_key or "",
            model=settings.oracle_model,
            timeout=settings.oracle_timeout,
            max_tokens=settings.oracle_max_tokens,
            temperature=settings.oracle_temperature,
            base_url=settings.oracle_base_url,
            max_retries=settings.oracle_max_retries
        )
    if provider == "local":
        return LocalOracleClient(
            endpoint=settings.oracle_local_endpoint,
            model=settings.oracle_model,
            timeout=settings.oracle_timeout,
            max_tokens=settings.oracle_max_tokens,
            temperature=settings.oracle_temperature
        )
    if provider == "stub":
        return StubOracleClient()
    raise OracleConfigurationError(f"Unknown oracle provider: {provider}")
