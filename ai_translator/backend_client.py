"""
Backend clients.

The engine only needs one operation from a backend: stream a chat completion
and report text, reasoning and usage deltas through a callback. Vendors that
expose an OpenAI-compatible chat completions endpoint are driven through the
``openai`` SDK; ``dry_run`` swaps in a client that echoes the source strings.
"""
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
    RateLimitError,
)
from openai.types.chat import (
    ChatCompletionSystemMessageParam,
    ChatCompletionUserMessageParam,
)

from ai_translator.exceptions import ProviderError, UnconfiguredProvider
from ai_translator.models import ProviderConfig
from ai_translator.token_usage import TokenUsage

logger = logging.getLogger(__name__)

# vendor -> (default base url, api key environment variable)
VENDOR_ENDPOINTS: Dict[str, Tuple[Optional[str], str]] = {
    'openai': (None, 'OPENAI_API_KEY'),
    'anthropic': ('https://api.anthropic.com/v1/', 'ANTHROPIC_API_KEY'),
    'gemini': ('https://generativelanguage.googleapis.com/v1beta/openai/', 'GEMINI_API_KEY'),
    'openai_compatible': (None, 'OPENAI_API_KEY'),
}


class StreamEventType(str, Enum):
    TEXT = 'text'
    REASONING_START = 'reasoning_start'
    REASONING_DELTA = 'reasoning_delta'
    REASONING_END = 'reasoning_end'
    USAGE = 'usage'


@dataclass(frozen=True)
class StreamEvent:
    type: StreamEventType
    text: str = ''
    usage: Optional[TokenUsage] = None


@dataclass(frozen=True)
class BackendRequest:
    model: str
    system: str
    messages: Tuple[str, ...]
    temperature: float
    max_tokens: int
    reasoning_budget: Optional[int] = None


@dataclass
class BackendResponse:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    reasoning: str = ''
    finish_reason: Optional[str] = None


EventCallback = Callable[[StreamEvent], None]


class BackendClient(Protocol):
    async def stream(self, request: BackendRequest, on_event: EventCallback) -> BackendResponse:
        ...


def _retry_after(api_exc: Exception) -> Optional[float]:
    """Read a Retry-After hint (seconds or milliseconds) from an SDK error."""
    response = getattr(api_exc, 'response', None)
    headers = getattr(response, 'headers', None) or {}
    retry_after_header = headers.get('Retry-After') or headers.get('retry-after')
    if not retry_after_header:
        return None
    try:
        if retry_after_header.endswith('ms'):
            return float(retry_after_header[:-2]) / 1000
        return float(retry_after_header)
    except ValueError:
        logger.warning(f"Failed to parse Retry-After header: {retry_after_header!r}")
        return None


def _reasoning_effort(budget: int) -> str:
    if budget >= 8000:
        return 'high'
    if budget >= 2000:
        return 'medium'
    return 'low'


class OpenAIBackendClient:
    """Streams chat completions from an OpenAI-compatible endpoint."""

    def __init__(self, client: AsyncOpenAI, vendor: str = 'openai'):
        self._client = client
        self.vendor = vendor

    async def stream(self, request: BackendRequest, on_event: EventCallback) -> BackendResponse:
        messages = [ChatCompletionSystemMessageParam(role="system", content=request.system)]
        messages.extend(ChatCompletionUserMessageParam(role="user", content=m) for m in request.messages)
        params = {
            'model': request.model,
            'messages': messages,
            'temperature': request.temperature,
            'max_completion_tokens': request.max_tokens,
            'stream': True,
            'stream_options': {'include_usage': True},
        }
        if request.reasoning_budget:
            params['reasoning_effort'] = _reasoning_effort(request.reasoning_budget)

        text_parts: List[str] = []
        reasoning_parts: List[str] = []
        usage = TokenUsage()
        finish_reason = None
        in_reasoning = False
        try:
            stream = await self._client.chat.completions.create(**params)
            async for chunk in stream:
                if getattr(chunk, 'usage', None):
                    usage = self._convert_usage(chunk.usage)
                    on_event(StreamEvent(StreamEventType.USAGE, usage=usage))
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                reasoning = getattr(delta, 'reasoning_content', None)
                if reasoning:
                    if not in_reasoning:
                        in_reasoning = True
                        on_event(StreamEvent(StreamEventType.REASONING_START))
                    reasoning_parts.append(reasoning)
                    on_event(StreamEvent(StreamEventType.REASONING_DELTA, text=reasoning))
                if delta.content:
                    if in_reasoning:
                        in_reasoning = False
                        on_event(StreamEvent(StreamEventType.REASONING_END, text=''.join(reasoning_parts)))
                    text_parts.append(delta.content)
                    on_event(StreamEvent(StreamEventType.TEXT, text=delta.content))
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except (RateLimitError, APITimeoutError, APIConnectionError, APIStatusError, OpenAIError) as api_exc:
            raise ProviderError(
                f"{api_exc.__class__.__name__} - {api_exc}",
                provider=f"{self.vendor}:{request.model}",
                retry_after=_retry_after(api_exc),
            ) from api_exc

        if in_reasoning:
            on_event(StreamEvent(StreamEventType.REASONING_END, text=''.join(reasoning_parts)))
        return BackendResponse(
            text=''.join(text_parts),
            usage=usage,
            reasoning=''.join(reasoning_parts),
            finish_reason=finish_reason,
        )

    @staticmethod
    def _convert_usage(raw) -> TokenUsage:
        details = getattr(raw, 'prompt_tokens_details', None)
        cached = getattr(details, 'cached_tokens', 0) or 0
        return TokenUsage(
            input_tokens=getattr(raw, 'prompt_tokens', 0) or 0,
            output_tokens=getattr(raw, 'completion_tokens', 0) or 0,
            cache_read_input_tokens=cached,
        )


_USER_PROMPT_LINE = re.compile(r'^\s*- `(?P<key>[^`]+)`: """(?P<text>.*?)"""\s*$', re.MULTILINE | re.DOTALL)


class DryRunBackendClient:
    """Answers every request by echoing the source strings back unchanged."""

    def __init__(self, chunk_size: int = 64):
        self.chunk_size = chunk_size

    async def stream(self, request: BackendRequest, on_event: EventCallback) -> BackendResponse:
        prompt = "\n".join(request.messages)
        body = ["<translations>"]
        for match in _USER_PROMPT_LINE.finditer(prompt):
            body.append(
                f"<item><key>{match.group('key')}</key>"
                f"<trx><![CDATA[{match.group('text')}]]></trx></item>"
            )
        body.append("</translations>")
        text = "\n".join(body)
        for start in range(0, len(text), self.chunk_size):
            on_event(StreamEvent(StreamEventType.TEXT, text=text[start:start + self.chunk_size]))
        usage = TokenUsage(input_tokens=len(prompt.split()), output_tokens=len(text.split()))
        on_event(StreamEvent(StreamEventType.USAGE, usage=usage))
        return BackendResponse(text=text, usage=usage, finish_reason='stop')


def validate_provider(provider: ProviderConfig) -> None:
    """Raise UnconfiguredProvider unless the vendor and model can be dispatched."""
    if not provider.vendor or not provider.model:
        raise UnconfiguredProvider(
            f"Provider '{provider.name}' needs both a vendor and a model",
            details={'vendor': provider.vendor, 'model': provider.model},
        )
    if provider.vendor not in VENDOR_ENDPOINTS:
        raise UnconfiguredProvider(
            f"Unknown vendor '{provider.vendor}'. Supported: {', '.join(sorted(VENDOR_ENDPOINTS))}"
        )
    if provider.vendor == 'openai_compatible' and not provider.base_url:
        raise UnconfiguredProvider(f"Provider '{provider.name}' uses vendor 'openai_compatible' without a base_url")


class BackendFactory:
    """
    Creates (and caches) one client per endpoint.

    Args:
        dry_run: Hand out :class:`DryRunBackendClient` instances instead of
            real clients; no API key is needed.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self._clients: Dict[Tuple[Optional[str], str], OpenAIBackendClient] = {}

    def __call__(self, provider: ProviderConfig) -> BackendClient:
        validate_provider(provider)
        if self.dry_run:
            return DryRunBackendClient()

        default_base_url, default_key_env = VENDOR_ENDPOINTS[provider.vendor]
        base_url = provider.base_url or default_base_url
        key_env = provider.api_key_env or default_key_env
        cache_key = (base_url, key_env)
        if cache_key in self._clients:
            return self._clients[cache_key]

        api_key = os.environ.get(key_env)
        if not api_key:
            raise UnconfiguredProvider(
                f"{key_env} environment variable not found for provider '{provider.name}'. "
                f"Set it or enable dry_run mode in configuration."
            )
        if provider.vendor == 'openai' and not api_key.startswith('sk-'):
            logger.warning("Warning: %s does not start with 'sk-'. This may be invalid.", key_env)

        client = OpenAIBackendClient(AsyncOpenAI(api_key=api_key, base_url=base_url), vendor=provider.vendor)
        logger.info("Initialized %s client for %s", provider.vendor, base_url or 'api.openai.com')
        self._clients[cache_key] = client
        return client
