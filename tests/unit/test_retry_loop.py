"""Unit tests for the verification and retry loop."""
import asyncio

import pytest

from ai_translator.exceptions import ProviderError, RetriesExhausted
from ai_translator.models import LocalizedItem, PromptType, ProviderConfig, SourceEntry, TranslationCallbacks, TranslationStatus
from ai_translator.retry_loop import MAX_RETRY_DELAY, ProviderTranslator, run_with_retries
from tests.backend_stubs import ScriptedBackend, StallingBackend, prompt_keys, xml_response


def flaky_invoke(failures, items):
    """Returns no usable item ``failures`` times, then ``items``."""
    calls = []

    async def invoke(attempt):
        calls.append(attempt)
        if len(calls) <= failures:
            return [LocalizedItem('greeting', '')]
        return items

    return invoke, calls


class TestRunWithRetries:

    @pytest.mark.parametrize("failures", [0, 1, 3])
    def test_succeeds_within_budget(self, failures):
        invoke, calls = flaky_invoke(failures, [LocalizedItem('greeting', '안녕')])
        outcome = asyncio.run(run_with_retries(invoke, {'greeting'}, max_attempts=failures + 1))
        assert outcome.attempts == failures + 1
        assert calls == list(range(1, failures + 2))
        assert outcome.items == [LocalizedItem('greeting', '안녕')]

    @pytest.mark.parametrize("failures", [1, 2])
    def test_raises_when_budget_is_spent(self, failures):
        invoke, calls = flaky_invoke(failures, [LocalizedItem('greeting', '안녕')])
        with pytest.raises(RetriesExhausted) as excinfo:
            asyncio.run(run_with_retries(invoke, {'greeting'}, max_attempts=failures))
        assert excinfo.value.attempts == failures
        assert len(calls) == failures

    def test_missing_and_extra_keys_are_warnings(self):
        async def invoke(attempt):
            return [LocalizedItem('a', 'A'), LocalizedItem('zzz', 'Z')]

        outcome = asyncio.run(run_with_retries(invoke, {'a', 'b'}, max_attempts=1, label='p/ko'))
        assert [item.key for item in outcome.items] == ['a']
        assert outcome.missing_keys == {'b'}
        assert outcome.extra_keys == {'zzz'}
        assert any('Missing keys' in message and 'b' in message for message in outcome.warnings)

    def test_provider_error_honours_retry_after(self, no_retry_sleep):
        attempts = []

        async def invoke(attempt):
            attempts.append(attempt)
            if attempt == 1:
                raise ProviderError("rate limited", provider='p', retry_after=3.5)
            return [LocalizedItem('a', 'A')]

        asyncio.run(run_with_retries(invoke, {'a'}, max_attempts=2))
        no_retry_sleep.assert_awaited_once_with(3.5)

    def test_backoff_is_capped(self, no_retry_sleep):
        async def invoke(attempt):
            raise ProviderError("down", retry_after=120)

        with pytest.raises(RetriesExhausted):
            asyncio.run(run_with_retries(invoke, {'a'}, max_attempts=2))
        no_retry_sleep.assert_awaited_once_with(MAX_RETRY_DELAY)

    def test_timeout_counts_as_failed_attempt(self):
        async def invoke(attempt):
            if attempt == 1:
                raise asyncio.TimeoutError()
            return [LocalizedItem('a', 'A')]

        outcome = asyncio.run(run_with_retries(invoke, {'a'}, max_attempts=2))
        assert outcome.attempts == 2

    def test_other_exceptions_propagate(self):
        async def invoke(attempt):
            raise KeyError('bug')

        with pytest.raises(KeyError):
            asyncio.run(run_with_retries(invoke, {'a'}, max_attempts=3))

    def test_budget_must_be_positive(self):
        async def invoke(attempt):
            return []

        with pytest.raises(ValueError):
            asyncio.run(run_with_retries(invoke, {'a'}, max_attempts=0))


class TestProviderTranslator:

    def test_strips_key_prefix_and_fires_callbacks(self):
        backend = ScriptedBackend(respond=lambda request: xml_response(
            {key: f"번역:{key}" for key in prompt_keys(request)}))
        events = []
        usages = []
        prompts = []
        callbacks = TranslationCallbacks(
            on_translated=lambda item, status, locale: events.append((item.key, status, locale)),
            on_token_usage=usages.append,
            on_prompt_generated=lambda text, kind: prompts.append(kind),
        )
        translator = ProviderTranslator(ProviderConfig('openai', 'gpt-4o'), backend, max_attempts=1)
        result = asyncio.run(translator.translate(
            {'greeting': SourceEntry('Hello')}, 'en', 'ko', key_prefix='app', callbacks=callbacks))

        assert prompt_keys(backend.requests[0]) == ['app.greeting']
        assert result.as_map() == {'greeting': '번역:app.greeting'}
        assert ('greeting', TranslationStatus.STARTED, 'ko') in events
        assert ('greeting', TranslationStatus.COMPLETED, 'ko') in events
        assert prompts == [PromptType.SYSTEM, PromptType.USER]
        assert [usage.final for usage in usages].count(True) == 1
        assert usages[-1].total_tokens == backend.usage.total_tokens

    def test_retries_until_response_is_usable(self):
        backend = ScriptedBackend(["I am sorry, I cannot help.", xml_response({'a': 'A'})])
        translator = ProviderTranslator(ProviderConfig('openai', 'gpt-4o'), backend, max_attempts=2)
        result = asyncio.run(translator.translate({'a': SourceEntry('a')}, 'en', 'de'))
        assert result.attempts == 2
        assert backend.calls == 2

    def test_rules_reach_the_system_prompt(self):
        backend = ScriptedBackend([xml_response({'a': 'A'})])
        translator = ProviderTranslator(ProviderConfig('openai', 'gpt-4o'), backend, max_attempts=1,
                                        language_codes={'de': 'German'})
        asyncio.run(translator.translate({'a': SourceEntry('a')}, 'en', 'de', rules=["Use 'du'."]))
        assert "Special rules for German:\n- Use 'du'." in backend.requests[0].system

    def test_stalled_stream_is_retried_without_partial_items(self):
        backend = StallingBackend("<translations><item><key>a</key><trx>Halb</trx></item>",
                                  replies=[xml_response({'a': 'A', 'b': 'B'})])
        translator = ProviderTranslator(ProviderConfig('openai', 'gpt-4o'), backend, max_attempts=2, timeout=0.05)

        result = asyncio.run(translator.translate({'a': SourceEntry('a'), 'b': SourceEntry('b')}, 'en', 'de'))

        assert result.attempts == 2
        assert result.as_map() == {'a': 'A', 'b': 'B'}
        assert result.missing_keys == set()

    def test_stream_that_never_finishes_exhausts_retries(self):
        backend = StallingBackend("<translations><item><key>a</key><trx>Halb</trx></item>", stalls=5)
        translator = ProviderTranslator(ProviderConfig('openai', 'gpt-4o'), backend, max_attempts=2, timeout=0.05)

        with pytest.raises(RetriesExhausted) as excinfo:
            asyncio.run(translator.translate({'a': SourceEntry('a')}, 'en', 'de'))
        assert excinfo.value.attempts == 2
        assert backend.calls == 2
