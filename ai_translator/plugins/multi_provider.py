"""
Translation through one or more providers.

Runs at the translation stage: for every chunk prepared by the chunking
plugin (or the whole working set) it hands the keys still pending per locale
to a :class:`ConsensusEngine`. Also offers the judge as the
``consensus.judge`` service.
"""
import asyncio
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ai_translator.app_config import parse_provider
from ai_translator.backend_client import BackendClient, BackendFactory
from ai_translator.consensus import Candidate, ConsensusEngine, LocaleState, longest_candidate
from ai_translator.exceptions import TranslationFailed
from ai_translator.models import PipelineStage, ProviderConfig, TranslationContext
from ai_translator.plugins.base import ProviderPlugin
from ai_translator.plugins.translation_context import context_rules

ProviderSpec = Union[ProviderConfig, Mapping[str, Any]]


def parse_providers(providers: Union[Sequence[ProviderSpec], Mapping[str, ProviderSpec], None]) -> List[ProviderConfig]:
    """Accept a list of provider dicts or a ``label -> dict`` mapping."""
    if not providers:
        return []
    if isinstance(providers, Mapping):
        items = [(label, spec) for label, spec in providers.items()]
    else:
        items = [(None, spec) for spec in providers]
    parsed = []
    for label, spec in items:
        if isinstance(spec, ProviderConfig):
            parsed.append(spec)
            continue
        spec = dict(spec)
        if label and not spec.get('label'):
            spec['label'] = label
        parsed.append(parse_provider(spec))
    return parsed


class MultiProviderPlugin(ProviderPlugin):
    name = 'multi_provider'
    priority = 50
    default_config: Mapping[str, Any] = {
        'providers': [
            {
                'label': 'primary',
                'provider': 'anthropic',
                'model': 'claude-3-opus-20240229',
                'temperature': 0.3,
                'thinking': False,
                'max_tokens': 4096,
            },
        ],
        'judge': {
            'provider': 'openai',
            'model': 'gpt-5',
            'temperature': 0.3,
            'thinking': True,
        },
        'execution_mode': 'parallel',
        'consensus_threshold': 2,
        'fallback_on_failure': True,
        'retry_attempts': 2,
        'retry_base_delay': 1.0,
        'timeout': 30,
        'temperature_overrides': {'gpt-5': 1.0},
        'max_concurrency': 4,
        'requests_per_minute': None,
        'language_codes': {},
        'show_progress': False,
        'dry_run': False,
    }

    def __init__(self, config: Optional[Mapping[str, Any]] = None,
                 backend_factory: Optional[Callable[[ProviderConfig], BackendClient]] = None,
                 fallback_selector: Callable[[Sequence[Candidate]], Candidate] = longest_candidate):
        super().__init__(config)
        self.backend_factory = backend_factory
        self.fallback_selector = fallback_selector

    def provides(self) -> List[str]:
        return ['translation.multi_provider', 'consensus.judge']

    def when(self) -> List[str]:
        return [PipelineStage.TRANSLATION]

    def build_engine(self, context: TranslationContext) -> ConsensusEngine:
        """Engine for one run, with the tenant and request overrides applied."""
        def get(path: str, default: Any = None) -> Any:
            return self.settings.for_context(context, path, default)

        judge_spec = get('judge')
        judge = parse_providers([judge_spec])[0] if judge_spec else None
        backend_factory = self.backend_factory or BackendFactory(
            dry_run=bool(get('dry_run', False) or context.request.get_option('dry_run')))
        timeout = get('timeout', 30)
        return ConsensusEngine(
            parse_providers(get('providers')),
            backend_factory,
            judge=judge,
            execution_mode=get('execution_mode', 'parallel'),
            consensus_threshold=int(get('consensus_threshold', 2)),
            fallback_on_failure=bool(get('fallback_on_failure', True)),
            retry_attempts=int(get('retry_attempts', 2)),
            retry_base_delay=float(get('retry_base_delay', 1.0)),
            timeout=float(timeout) if timeout else None,
            temperature_overrides=get('temperature_overrides', {}),
            max_concurrency=int(get('max_concurrency', 4)),
            requests_per_minute=get('requests_per_minute'),
            language_codes=get('language_codes', {}),
            show_progress=bool(get('show_progress', False)),
            fallback_selector=self.fallback_selector,
        )

    async def execute(self, context: TranslationContext, **kwargs) -> Any:
        if 'candidates' in kwargs:
            return await self.judge(context, **kwargs)
        return await self.translate(context)

    async def judge(self, context: TranslationContext, candidates: Sequence[Any], source_text: str = '',
                    locale: Optional[str] = None, **_kwargs) -> str:
        """Pick one of ``candidates`` (``(label, text)`` pairs or plain strings) and return its text."""
        normalized = []
        for index, candidate in enumerate(candidates, start=1):
            if isinstance(candidate, Candidate):
                normalized.append(candidate)
            elif isinstance(candidate, (tuple, list)):
                normalized.append(Candidate(str(candidate[0]), str(candidate[1])))
            else:
                normalized.append(Candidate(f"candidate_{index}", str(candidate)))
        engine = self.build_engine(context)
        chosen = await engine.select(context, locale or context.request.target_locales[0], source_text, normalized)
        return chosen.text

    async def translate(self, context: TranslationContext) -> Dict[str, List[str]]:
        locales = list(context.request.target_locales)
        pending = {locale: set(context.pending_keys(locale)) for locale in locales}
        if not any(pending.values()):
            self.settings.info("Nothing to translate; every key already has a translation")
            return {}

        engine = self.build_engine(context)
        chunks = context.get_plugin_data('token_chunking', 'chunks') or [list(context.texts)]
        glossary_rules = context.get_plugin_data('glossary', 'rules') or {}
        rules = {locale: list(lines) for locale, lines in glossary_rules.items()}
        examples = context.get_plugin_data('translation_context', 'global_translation_context') or {}
        for locale, files in examples.items():
            rules.setdefault(locale, []).extend(context_rules(files))

        batches: List[Tuple[List[str], Dict[str, Any]]] = []
        for chunk in chunks:
            groups: Dict[Tuple[str, ...], List[str]] = {}
            for locale in locales:
                keys = tuple(key for key in chunk if key in pending[locale])
                if keys:
                    groups.setdefault(keys, []).append(locale)
            for keys, group_locales in groups.items():
                batches.append((group_locales, {key: context.texts[key] for key in keys}))

        self.settings.info("Translating %d batch(es) with %d provider(s) in %s mode",
                           len(batches), len(engine.providers), engine.execution_mode)
        results = await asyncio.gather(*(
            engine.translate(context, group_locales, entries, rules_for=lambda locale: rules.get(locale, []))
            for group_locales, entries in batches
        ))

        states: Dict[str, List[str]] = {locale: [] for locale in locales}
        for outcomes in results:
            for locale, outcome in outcomes.items():
                states[locale].append(outcome.state.value)
        context.set_plugin_data(self.name, 'states', states)

        if not any(context.translations.values()):
            raise TranslationFailed(
                "No usable translation was produced by any provider",
                details={'errors': list(context.errors)},
            )
        if any(state == LocaleState.FAILED.value for values in states.values() for state in values):
            self.settings.warning("Some batches produced no translation; keeping the keys resolved so far")
        return states
