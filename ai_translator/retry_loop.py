import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Mapping, Optional, Sequence, Set

from aiolimiter import AsyncLimiter

from ai_translator.backend_client import BackendClient, BackendRequest, StreamEvent, StreamEventType
from ai_translator.exceptions import ProviderError, RetriesExhausted, VerificationFailed
from ai_translator.models import (
    LocalizedItem,
    PromptType,
    ProviderConfig,
    SourceEntry,
    TranslationCallbacks,
    TranslationStatus,
)
from ai_translator.prompts import build_system_prompt, build_user_prompt, language_name
from ai_translator.stream_decoder import StreamDecoder
from ai_translator.token_usage import TokenUsage, TokenUsageAccumulator
from ai_translator.translation_validator import verify_items

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY = 10.0


@dataclass
class RetryOutcome:
    items: List[LocalizedItem]
    attempts: int
    missing_keys: Set[str] = field(default_factory=set)
    extra_keys: Set[str] = field(default_factory=set)
    warnings: List[str] = field(default_factory=list)


async def _handle_retry(attempt: int, max_attempts: int, base_delay: float, label: str,
                        exc: Optional[Exception] = None) -> bool:
    """
    Handle the retry mechanism with exponential backoff and jitter.

    Args:
        attempt (int): The attempt that just failed, starting at 1.
        max_attempts (int): The total number of attempts allowed.
        base_delay (float): The base delay in seconds.
        label (str): What is being retried, for the log.
        exc (Optional[Exception]): The failure, used for a Retry-After hint.

    Returns:
        bool: True if the operation should retry, False otherwise.
    """
    if attempt >= max_attempts:
        logger.error(f"Request for '{label}' failed after {max_attempts} attempt(s).")
        return False

    retry_after = getattr(exc, 'retry_after', None)
    if retry_after is None:
        retry_after = base_delay * (2 ** (attempt - 1)) + random.uniform(0, base_delay)
    delay = min(retry_after, MAX_RETRY_DELAY)
    logger.info(f"Retrying '{label}' in {delay:.2f} seconds (Attempt {attempt}/{max_attempts})")
    await asyncio.sleep(delay)
    return True


async def run_with_retries(invoke: Callable[[int], Awaitable[Sequence[LocalizedItem]]],
                           source_keys: Set[str],
                           max_attempts: int,
                           base_delay: float = 1.0,
                           label: str = 'backend') -> RetryOutcome:
    """
    Call ``invoke`` until its items pass verification.

    ``invoke`` receives the attempt number and returns the decoded items; it
    enforces its own deadline and raises ``asyncio.TimeoutError`` when it
    passes. Verification failures, provider errors and timeouts are retried;
    any other exception propagates untouched.

    Raises:
        RetriesExhausted: After ``max_attempts`` failed attempts.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Optional[Exception] = None
    for attempt in range(1, max_attempts + 1):
        try:
            items = await invoke(attempt)
            result = verify_items(items, source_keys)
        except asyncio.TimeoutError:
            last_error = ProviderError(f"'{label}' timed out", provider=label)
            logger.warning(f"[{label}] Timed out (attempt {attempt}/{max_attempts}); partial items discarded")
        except VerificationFailed as exc:
            last_error = exc
            logger.warning(f"[{label}] Verification failed (attempt {attempt}/{max_attempts}): {exc}")
        except ProviderError as exc:
            last_error = exc
            logger.error(f"[{label}] API error occurred (attempt {attempt}/{max_attempts}): {exc}")
        else:
            warnings = result.warnings(label)
            for message in warnings:
                logger.warning(message)
            return RetryOutcome(
                items=result.items,
                attempts=attempt,
                missing_keys=result.missing_keys,
                extra_keys=result.extra_keys,
                warnings=warnings,
            )

        if not await _handle_retry(attempt, max_attempts, base_delay, label, last_error):
            break

    raise RetriesExhausted(label, max_attempts, last_error)


@dataclass
class ProviderResult:
    provider: ProviderConfig
    locale: str
    items: List[LocalizedItem]
    attempts: int
    usage: TokenUsage
    warnings: List[str] = field(default_factory=list)
    missing_keys: Set[str] = field(default_factory=set)

    def as_map(self) -> dict:
        return {item.key: item.translated for item in self.items}


def _with_prefix(key: str, prefix: Optional[str]) -> str:
    return f"{prefix}.{key}" if prefix else key


def _without_prefix(key: str, prefix: Optional[str]) -> str:
    if prefix and key.startswith(prefix + '.'):
        return key[len(prefix) + 1:]
    return key


class ProviderTranslator:
    """
    Translates one batch of strings into one locale with one provider.

    Builds the prompts, streams the backend response through a
    :class:`StreamDecoder`, verifies the items and retries on failure. Each
    call owns its decoder and its token accumulator.
    """

    def __init__(self, provider: ProviderConfig, backend: BackendClient,
                 max_attempts: int = 2,
                 base_delay: float = 1.0,
                 timeout: Optional[float] = 30.0,
                 semaphore: Optional[asyncio.Semaphore] = None,
                 rate_limiter: Optional[AsyncLimiter] = None,
                 language_codes: Optional[Mapping[str, str]] = None):
        self.provider = provider
        self.backend = backend
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout
        self.language_codes = language_codes or {}
        self._semaphore = semaphore or contextlib.nullcontext()
        self._rate_limiter = rate_limiter or contextlib.nullcontext()

    async def translate(self,
                        entries: Mapping[str, SourceEntry],
                        source_locale: str,
                        target_locale: str,
                        rules: Sequence[str] = (),
                        key_prefix: Optional[str] = None,
                        callbacks: Optional[TranslationCallbacks] = None,
                        usage_parent: Optional[TokenUsageAccumulator] = None) -> ProviderResult:
        callbacks = callbacks or TranslationCallbacks()
        prefixed = {_with_prefix(key, key_prefix): entry for key, entry in entries.items()}
        source_language = language_name(source_locale, self.language_codes)
        target_language = language_name(target_locale, self.language_codes)

        system_prompt = build_system_prompt(source_language, target_language, rules)
        user_prompt = build_user_prompt(prefixed, target_locale, source_language, target_language)
        callbacks.get('on_prompt_generated')(system_prompt, PromptType.SYSTEM)
        callbacks.get('on_prompt_generated')(user_prompt, PromptType.USER)

        request = BackendRequest(
            model=self.provider.model,
            system=system_prompt,
            messages=(user_prompt,),
            temperature=self.provider.temperature,
            max_tokens=max(self.provider.max_tokens, self.provider.reasoning_budget or 0),
            reasoning_budget=self.provider.reasoning_budget,
        )
        usage = TokenUsageAccumulator(on_update=callbacks.on_token_usage, parent=usage_parent)
        label = f"{self.provider.name}/{target_locale}"

        async def invoke(attempt: int) -> List[LocalizedItem]:
            async with self._semaphore, self._rate_limiter:
                if self.timeout:
                    return await asyncio.wait_for(
                        self._stream_once(request, target_locale, key_prefix, callbacks, usage), self.timeout)
                return await self._stream_once(request, target_locale, key_prefix, callbacks, usage)

        try:
            outcome = await run_with_retries(invoke, set(prefixed), self.max_attempts,
                                             base_delay=self.base_delay, label=label)
        finally:
            usage.finalize()

        items = [
            LocalizedItem(key=_without_prefix(item.key, key_prefix), translated=item.translated, comment=item.comment)
            for item in outcome.items
        ]
        for item in items:
            if item.comment:
                logger.warning(f"[{label}] Comment for '{item.key}': {item.comment}")
        return ProviderResult(
            provider=self.provider,
            locale=target_locale,
            items=items,
            attempts=outcome.attempts,
            usage=usage.usage,
            warnings=outcome.warnings,
            missing_keys={_without_prefix(key, key_prefix) for key in outcome.missing_keys},
        )

    async def _stream_once(self, request: BackendRequest, locale: str, key_prefix: Optional[str],
                           callbacks: TranslationCallbacks, usage: TokenUsageAccumulator) -> List[LocalizedItem]:
        on_translated = callbacks.get('on_translated')

        def item_done(item: LocalizedItem) -> None:
            public = LocalizedItem(_without_prefix(item.key, key_prefix), item.translated, item.comment)
            on_translated(public, TranslationStatus.COMPLETED, locale)

        def item_started(key: str) -> None:
            on_translated(LocalizedItem(_without_prefix(key, key_prefix), ''), TranslationStatus.STARTED, locale)

        decoder = StreamDecoder(
            on_item=item_done,
            on_item_started=item_started,
            on_reasoning_start=callbacks.on_reasoning_start,
            on_reasoning_delta=callbacks.on_reasoning_delta,
            on_reasoning_end=callbacks.on_reasoning_end,
        )
        reported = [TokenUsage()]

        def record_usage(total: TokenUsage) -> None:
            # Backends report cumulative totals for the call; only the growth is added.
            previous = reported[0]
            delta = TokenUsage(
                input_tokens=max(total.input_tokens - previous.input_tokens, 0),
                output_tokens=max(total.output_tokens - previous.output_tokens, 0),
                cache_creation_input_tokens=max(
                    total.cache_creation_input_tokens - previous.cache_creation_input_tokens, 0),
                cache_read_input_tokens=max(total.cache_read_input_tokens - previous.cache_read_input_tokens, 0),
            )
            reported[0] = total
            if delta.total_tokens or delta.cache_read_input_tokens or delta.cache_creation_input_tokens:
                usage.merge(delta)

        def on_event(event: StreamEvent) -> None:
            if event.type is StreamEventType.TEXT:
                callbacks.get('on_raw_chunk')(event.text)
                decoder.feed(event.text)
            elif event.type is StreamEventType.REASONING_START:
                callbacks.get('on_reasoning_start')()
            elif event.type is StreamEventType.REASONING_DELTA:
                callbacks.get('on_reasoning_delta')(event.text)
            elif event.type is StreamEventType.REASONING_END:
                callbacks.get('on_reasoning_end')(event.text)
            elif event.type is StreamEventType.USAGE and event.usage is not None:
                record_usage(event.usage)

        response = await self.backend.stream(request, on_event)
        record_usage(response.usage)
        decoder.finish(response.text)
        if response.finish_reason == 'length':
            logger.warning(f"Response for {self.provider.name}/{locale} hit the token limit; trailing items may be missing")
        return decoder.items
