"""
Multi-provider consensus.

Every configured provider translates the same batch for a locale. Keys with
a single distinct candidate are taken as is; keys with several are put in
front of a judge model, and when the judge cannot be used the longest
candidate wins.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from aiolimiter import AsyncLimiter
from tqdm.asyncio import tqdm

from ai_translator.backend_client import BackendClient, BackendRequest, StreamEvent, StreamEventType
from ai_translator.exceptions import JudgeParseFailure, ProviderError, UnconfiguredProvider
from ai_translator.models import ProviderConfig, SourceEntry, TranslationContext
from ai_translator.prompts import build_judge_prompt, language_name
from ai_translator.retry_loop import ProviderResult, ProviderTranslator
from ai_translator.token_usage import TokenUsageAccumulator

logger = logging.getLogger(__name__)

JUDGE_SYSTEM_PROMPT = "You are a meticulous translation reviewer. You only ever answer with a number."
_REASONING_BLOCK = re.compile(r'<(thinking|think)>.*?</\1>', re.DOTALL | re.IGNORECASE)


class LocaleState(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    CONSENSUS = 'consensus'
    DIRECT = 'direct'
    RESOLVED = 'resolved'
    FAILED = 'failed'


@dataclass(frozen=True)
class Candidate:
    provider: str
    text: str


@dataclass
class LocaleOutcome:
    locale: str
    state: LocaleState = LocaleState.PENDING
    translations: Dict[str, str] = field(default_factory=dict)
    chosen_by: Dict[str, str] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)


def longest_candidate(candidates: Sequence[Candidate]) -> Candidate:
    """Deterministic fallback: the longest text, the earliest provider on a tie."""
    return max(candidates, key=lambda candidate: len(candidate.text))


def parse_judge_reply(reply: str, candidate_count: int) -> int:
    """Return the 1-based candidate number found in ``reply``."""
    match = re.search(r'\d+', _REASONING_BLOCK.sub('', reply))
    if not match:
        raise JudgeParseFailure(reply, candidate_count)
    choice = int(match.group(0))
    if not 1 <= choice <= candidate_count:
        raise JudgeParseFailure(reply, candidate_count)
    return choice


def _unique_labels(providers: Sequence[ProviderConfig]) -> List[ProviderConfig]:
    seen: Dict[str, int] = {}
    labelled = []
    for provider in providers:
        count = seen.get(provider.name, 0) + 1
        seen[provider.name] = count
        labelled.append(provider if count == 1 else ProviderConfig(
            vendor=provider.vendor, model=provider.model, temperature=provider.temperature,
            max_tokens=provider.max_tokens, label=f"{provider.name}#{count}", base_url=provider.base_url,
            api_key_env=provider.api_key_env, reasoning_budget=provider.reasoning_budget, extras=provider.extras,
        ))
    return labelled


class ConsensusEngine:
    """
    Runs providers for one or more locales and writes the chosen text into the context.

    The engine is the only writer of translations produced by providers:
    provider calls run concurrently, but their results are merged here, one
    locale at a time, once every provider for that locale has finished.

    Args:
        providers: Provider configurations in preference order.
        backend_factory: Maps a provider configuration to a client. Called
            for every provider (and the judge) up front, so configuration
            errors surface before any request is sent.
        judge: Provider used to pick between differing candidates.
        execution_mode: ``parallel`` or ``sequential``.
        consensus_threshold: Number of providers from which agreement is
            required in sequential mode.
        fallback_on_failure: Drop a failing provider's candidates instead of
            failing the locale.
        temperature_overrides: ``model -> temperature`` forced before dispatch.
        fallback_selector: Picks a candidate when the judge cannot decide.
    """

    def __init__(self, providers: Sequence[ProviderConfig],
                 backend_factory: Callable[[ProviderConfig], BackendClient],
                 judge: Optional[ProviderConfig] = None,
                 execution_mode: str = 'parallel',
                 consensus_threshold: int = 2,
                 fallback_on_failure: bool = True,
                 retry_attempts: int = 2,
                 retry_base_delay: float = 1.0,
                 timeout: Optional[float] = 30.0,
                 temperature_overrides: Optional[Mapping[str, float]] = None,
                 max_concurrency: int = 4,
                 requests_per_minute: Optional[int] = None,
                 language_codes: Optional[Mapping[str, str]] = None,
                 show_progress: bool = False,
                 fallback_selector: Callable[[Sequence[Candidate]], Candidate] = longest_candidate):
        if not providers:
            raise UnconfiguredProvider("No translation providers configured")
        if execution_mode not in ('parallel', 'sequential'):
            raise ValueError(f"Unknown execution mode '{execution_mode}'")

        self.temperature_overrides = dict(temperature_overrides or {})
        self.providers = [self._prepare(provider) for provider in _unique_labels(providers)]
        self.judge = self._prepare(judge) if judge else None
        self.execution_mode = execution_mode
        self.consensus_threshold = consensus_threshold
        self.fallback_on_failure = fallback_on_failure
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.timeout = timeout
        self.language_codes = dict(language_codes or {})
        self.show_progress = show_progress
        self.fallback_selector = fallback_selector

        self._backends = {provider.name: backend_factory(provider) for provider in self.providers}
        self._judge_backend = backend_factory(self.judge) if self.judge else None
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._rate_limiter = AsyncLimiter(requests_per_minute, 60) if requests_per_minute else None

    def _prepare(self, provider: ProviderConfig) -> ProviderConfig:
        forced = self.temperature_overrides.get(provider.model)
        if forced is None or provider.temperature == forced:
            return provider
        logger.info(f"Model '{provider.model}' only accepts temperature {forced}; "
                    f"overriding {provider.temperature} for provider '{provider.name}'")
        return provider.with_temperature(forced)

    def needs_consensus(self, context: Optional[TranslationContext] = None) -> bool:
        if context is not None:
            requested = context.request.get_option('require_consensus')
            if requested is not None:
                return bool(requested)
        return len(self.providers) >= self.consensus_threshold

    def _translator(self, provider: ProviderConfig) -> ProviderTranslator:
        return ProviderTranslator(
            provider,
            self._backends[provider.name],
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            timeout=self.timeout,
            semaphore=self._semaphore,
            rate_limiter=self._rate_limiter,
            language_codes=self.language_codes,
        )

    async def translate(self, context: TranslationContext, locales: Sequence[str],
                        entries: Mapping[str, SourceEntry],
                        rules_for: Optional[Callable[[str], Sequence[str]]] = None) -> Dict[str, LocaleOutcome]:
        """Translate ``entries`` into every locale and record the results in ``context``."""
        if not entries or not locales:
            return {}
        rules_for = rules_for or (lambda _locale: ())
        if self.execution_mode == 'parallel':
            return await self._translate_parallel(context, locales, entries, rules_for)
        outcomes = await asyncio.gather(*(
            self._translate_sequential(context, locale, entries, rules_for) for locale in locales
        ))
        return {outcome.locale: outcome for outcome in outcomes}

    async def _run_unit(self, context: TranslationContext, locale: str, provider: ProviderConfig,
                        entries: Mapping[str, SourceEntry],
                        rules_for: Callable[[str], Sequence[str]]) -> ProviderResult:
        return await self._translator(provider).translate(
            entries,
            context.request.source_locale,
            locale,
            rules=rules_for(locale),
            key_prefix=context.request.get_option('key_prefix'),
            callbacks=context.callbacks,
            usage_parent=context.token_usage,
        )

    async def _translate_parallel(self, context: TranslationContext, locales: Sequence[str],
                                  entries: Mapping[str, SourceEntry],
                                  rules_for: Callable[[str], Sequence[str]]) -> Dict[str, LocaleOutcome]:
        async def unit(locale: str, provider: ProviderConfig):
            try:
                return locale, provider, await self._run_unit(context, locale, provider, entries, rules_for), None
            except ProviderError as exc:
                return locale, provider, None, exc

        outcomes = {locale: LocaleOutcome(locale, state=LocaleState.RUNNING) for locale in locales}
        results: Dict[str, Dict[str, ProviderResult]] = {locale: {} for locale in locales}
        remaining = {locale: len(self.providers) for locale in locales}
        tasks = [asyncio.ensure_future(unit(locale, provider)) for locale in locales for provider in self.providers]
        try:
            for future in tqdm.as_completed(tasks, total=len(tasks), desc="Translating", unit="call",
                                            disable=not self.show_progress):
                locale, provider, result, error = await future
                if error is not None:
                    outcomes[locale].failures[provider.name] = str(error)
                else:
                    results[locale][provider.name] = result
                remaining[locale] -= 1
                if remaining[locale] == 0:
                    ordered = [results[locale][p.name] for p in self.providers if p.name in results[locale]]
                    await self._resolve(context, outcomes[locale], entries, ordered)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        return outcomes

    async def _translate_sequential(self, context: TranslationContext, locale: str,
                                    entries: Mapping[str, SourceEntry],
                                    rules_for: Callable[[str], Sequence[str]]) -> LocaleOutcome:
        outcome = LocaleOutcome(locale, state=LocaleState.RUNNING)
        results: List[ProviderResult] = []
        for provider in self.providers:
            try:
                results.append(await self._run_unit(context, locale, provider, entries, rules_for))
            except ProviderError as exc:
                outcome.failures[provider.name] = str(exc)
                if not self.fallback_on_failure:
                    break
                continue
            if len(self.providers) == 1 or not self.needs_consensus(context):
                break
        await self._resolve(context, outcome, entries, results)
        return outcome

    async def _resolve(self, context: TranslationContext, outcome: LocaleOutcome,
                       entries: Mapping[str, SourceEntry], results: List[ProviderResult]) -> None:
        locale = outcome.locale
        for provider_name, error in outcome.failures.items():
            context.add_warning(f"Provider '{provider_name}' failed for locale '{locale}': {error}")
            logger.warning(f"Provider '{provider_name}' failed for locale '{locale}': {error}")
        for result in results:
            for message in result.warnings:
                context.add_warning(message)

        if (outcome.failures and not self.fallback_on_failure) or not results:
            outcome.state = LocaleState.FAILED
            message = f"No usable translation for locale '{locale}'"
            if outcome.failures and not self.fallback_on_failure:
                message += " (fallback_on_failure is disabled)"
            context.add_error(message)
            logger.error(message)
            return

        outcome.state = LocaleState.CONSENSUS if len(results) > 1 else LocaleState.DIRECT
        maps = [(result.provider.name, result.as_map()) for result in results]
        decisions: Dict[str, Candidate] = {}
        contested: Dict[str, List[Candidate]] = {}
        for key in entries:
            candidates: List[Candidate] = []
            for provider_name, values in maps:
                text = values.get(key)
                if text and all(text != existing.text for existing in candidates):
                    candidates.append(Candidate(provider_name, text))
            if len(candidates) == 1:
                decisions[key] = candidates[0]
            elif candidates:
                contested[key] = candidates

        if contested:
            keys = list(contested)
            choices = await asyncio.gather(*(
                self.select(context, locale, entries[key].text, contested[key]) for key in keys
            ))
            decisions.update(zip(keys, choices))

        for key in entries:
            if key not in decisions:
                continue
            chosen = decisions[key]
            context.add_translation(locale, key, chosen.text, metadata={
                'provider': chosen.provider,
                'consensus': key in contested,
            })
            outcome.translations[key] = chosen.text
            outcome.chosen_by[key] = chosen.provider
        outcome.state = LocaleState.RESOLVED

    async def select(self, context: TranslationContext, locale: str, source_text: str,
                     candidates: Sequence[Candidate]) -> Candidate:
        """Ask the judge for the best candidate, falling back deterministically."""
        if len(candidates) == 1:
            return candidates[0]
        if self.judge is None or self._judge_backend is None:
            context.add_warning(f"No judge configured for locale '{locale}'; used fallback selection")
            return self.fallback_selector(candidates)

        prompt = build_judge_prompt(
            source_text,
            language_name(locale, self.language_codes),
            [(candidate.provider, candidate.text) for candidate in candidates],
        )
        try:
            reply = await self._ask_judge(context, prompt)
            choice = parse_judge_reply(reply, len(candidates))
        except (JudgeParseFailure, ProviderError) as exc:
            chosen = self.fallback_selector(candidates)
            message = f"Judge could not select a translation for locale '{locale}' ({exc}); used '{chosen.provider}'"
            context.add_warning(message)
            logger.warning(message)
            return chosen
        logger.debug(f"Judge picked candidate {choice} from '{candidates[choice - 1].provider}'")
        return candidates[choice - 1]

    async def _ask_judge(self, context: TranslationContext, prompt: str) -> str:
        request = BackendRequest(
            model=self.judge.model,
            system=JUDGE_SYSTEM_PROMPT,
            messages=(prompt,),
            temperature=self.judge.temperature,
            max_tokens=max(self.judge.max_tokens, self.judge.reasoning_budget or 0),
            reasoning_budget=self.judge.reasoning_budget,
        )
        usage = TokenUsageAccumulator(on_update=context.callbacks.on_token_usage, parent=context.token_usage)
        parts: List[str] = []

        def on_event(event: StreamEvent) -> None:
            if event.type is StreamEventType.TEXT:
                parts.append(event.text)

        try:
            async with self._semaphore:
                if self._rate_limiter is not None:
                    await self._rate_limiter.acquire()
                if self.timeout:
                    response = await asyncio.wait_for(self._judge_backend.stream(request, on_event), self.timeout)
                else:
                    response = await self._judge_backend.stream(request, on_event)
            usage.merge(response.usage)
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"Judge '{self.judge.name}' timed out", provider=self.judge.name) from exc
        finally:
            usage.finalize()
        return response.text or ''.join(parts)
