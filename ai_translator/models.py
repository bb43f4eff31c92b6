"""Data model shared by the pipeline, the plugins and the consensus engine."""
import copy
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from ai_translator.token_usage import TokenUsage, TokenUsageAccumulator


class PipelineStage:
    """Stage labels. The first three are fixed, the rest are conventions."""
    PRE_PROCESS = 'pre_process'
    DIFF_DETECTION = 'diff_detection'
    PREPARATION = 'preparation'
    CHUNKING = 'chunking'
    TRANSLATION = 'translation'
    CONSENSUS = 'consensus'
    VALIDATION = 'validation'
    POST_PROCESS = 'post_process'
    OUTPUT = 'output'

    ESSENTIAL = (TRANSLATION, VALIDATION, OUTPUT)

    DEFAULT_ORDER = (
        PRE_PROCESS,
        DIFF_DETECTION,
        PREPARATION,
        CHUNKING,
        TRANSLATION,
        CONSENSUS,
        VALIDATION,
        POST_PROCESS,
        OUTPUT,
    )


class TranslationStatus(str, Enum):
    STARTED = 'started'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'


class PromptType(str, Enum):
    SYSTEM = 'system'
    USER = 'user'


@dataclass(frozen=True)
class SourceEntry:
    """A source string plus the hints that travel with it to the backend."""
    text: str
    context: Optional[str] = None
    references: Mapping[str, str] = field(default_factory=dict)

    def reference_for(self, locale: str) -> Optional[str]:
        return self.references.get(locale)


def _to_entry(value: Union[str, SourceEntry, Mapping[str, Any]]) -> SourceEntry:
    if isinstance(value, SourceEntry):
        return value
    if isinstance(value, Mapping):
        return SourceEntry(
            text=str(value.get('text', '')),
            context=value.get('context'),
            references=MappingProxyType(dict(value.get('references') or {})),
        )
    return SourceEntry(text=str(value))


@dataclass(frozen=True)
class TranslationRequest:
    """
    Immutable input of one pipeline run.

    ``texts`` accepts plain strings, :class:`SourceEntry` objects or dicts with
    ``text``/``context``/``references`` keys; everything is normalised to
    read-only ``SourceEntry`` mappings.
    """
    texts: Mapping[str, Any]
    source_locale: str
    target_locales: Union[str, Sequence[str]]
    options: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None
    plugins: Sequence[str] = ()
    plugin_configs: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        if not self.source_locale:
            raise ValueError("A source locale is required")
        locales = (self.target_locales,) if isinstance(self.target_locales, str) else tuple(self.target_locales)
        if not locales:
            raise ValueError("At least one target locale is required")
        object.__setattr__(self, 'target_locales', locales)
        object.__setattr__(self, 'texts', MappingProxyType({str(k): _to_entry(v) for k, v in self.texts.items()}))
        object.__setattr__(self, 'options', MappingProxyType(dict(self.options)))
        object.__setattr__(self, 'metadata', MappingProxyType(dict(self.metadata)))
        object.__setattr__(self, 'plugins', tuple(self.plugins))
        object.__setattr__(self, 'plugin_configs', MappingProxyType(
            {name: MappingProxyType(dict(cfg)) for name, cfg in self.plugin_configs.items()}))

    def get_option(self, name: str, default: Any = None) -> Any:
        return self.options.get(name, default)

    def source_keys(self) -> Set[str]:
        return set(self.texts)

    def for_locale(self, locale: str) -> "TranslationRequest":
        """Return a copy of the request narrowed to a single target locale."""
        return replace(self, target_locales=(locale,))


@dataclass(frozen=True)
class LocalizedItem:
    """One decoded translation unit."""
    key: str
    translated: str
    comment: Optional[str] = None


@dataclass(frozen=True)
class TranslationOutput:
    """One completed key/locale pair yielded by the pipeline."""
    key: str
    value: str
    locale: str
    cached: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderConfig:
    """Backend selection for one call. Build a new one instead of mutating."""
    vendor: str
    model: str
    temperature: float = 0.3
    max_tokens: int = 4096
    label: Optional[str] = None
    base_url: Optional[str] = None
    api_key_env: Optional[str] = None
    reasoning_budget: Optional[int] = None
    extras: Mapping[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.label or f"{self.vendor}:{self.model}"

    def with_temperature(self, temperature: float) -> "ProviderConfig":
        return replace(self, temperature=temperature)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], label: Optional[str] = None) -> "ProviderConfig":
        known = {'provider', 'vendor', 'model', 'temperature', 'max_tokens', 'label',
                 'base_url', 'api_key_env', 'thinking', 'reasoning_budget'}
        reasoning_budget = data.get('reasoning_budget')
        if reasoning_budget is None and data.get('thinking'):
            reasoning_budget = 10000
        return cls(
            vendor=str(data.get('provider') or data.get('vendor') or ''),
            model=str(data.get('model') or ''),
            temperature=float(data.get('temperature', 0.3)),
            max_tokens=int(data.get('max_tokens', 4096)),
            label=data.get('label') or label,
            base_url=data.get('base_url'),
            api_key_env=data.get('api_key_env'),
            reasoning_budget=reasoning_budget,
            extras=MappingProxyType({k: v for k, v in data.items() if k not in known}),
        )


def _noop(*_args, **_kwargs) -> None:
    return None


@dataclass
class TranslationCallbacks:
    """Progress hooks fired while a request is processed. All optional."""
    on_started: Optional[Callable[[TranslationRequest], None]] = None
    on_translated: Optional[Callable[[LocalizedItem, TranslationStatus, str], None]] = None
    on_raw_chunk: Optional[Callable[[str], None]] = None
    on_reasoning_start: Optional[Callable[[], None]] = None
    on_reasoning_delta: Optional[Callable[[str], None]] = None
    on_reasoning_end: Optional[Callable[[str], None]] = None
    on_token_usage: Optional[Callable[[TokenUsage], None]] = None
    on_prompt_generated: Optional[Callable[[str, PromptType], None]] = None

    def get(self, name: str) -> Callable[..., None]:
        return getattr(self, name) or _noop


class TranslationContext:
    """
    Mutable state of one pipeline run.

    Only the orchestrator and the plugins it drives touch a context. Every
    ``locale/key`` slot is written once; a second write is an error.
    """

    def __init__(self, request: TranslationRequest, callbacks: Optional[TranslationCallbacks] = None):
        self.request = request
        self.callbacks = callbacks or TranslationCallbacks()
        self.texts: Dict[str, SourceEntry] = dict(request.texts)
        self.translations: Dict[str, Dict[str, str]] = {locale: {} for locale in request.target_locales}
        self.cached: Dict[str, Set[str]] = {locale: set() for locale in request.target_locales}
        self.warnings: List[str] = []
        self.errors: List[str] = []
        self.plugin_data: Dict[str, Dict[str, Any]] = {}
        self.plugin_configs: Dict[str, Dict[str, Any]] = {}
        self.disabled_plugins: Set[str] = set()
        self.metadata: Dict[str, Any] = dict(request.metadata)
        self.outputs: List[TranslationOutput] = []
        self.token_usage = TokenUsageAccumulator()
        self.state = 'pending'
        self.current_stage: Optional[str] = None
        self.started_at = time.monotonic()
        self.finished_at: Optional[float] = None
        self._output_sink: Optional[Callable[[TranslationOutput], None]] = None
        self._value_filters: List[Callable[[str, str], str]] = []

    def attach_output_sink(self, sink: Optional[Callable[[TranslationOutput], None]]) -> None:
        self._output_sink = sink

    def add_value_filter(self, value_filter: Callable[[str, str], str]) -> None:
        """Register ``value_filter(locale, value)``, applied to every value before it is recorded."""
        self._value_filters.append(value_filter)

    def add_translation(self, locale: str, key: str, value: str, cached: bool = False,
                        metadata: Optional[Mapping[str, Any]] = None) -> TranslationOutput:
        if key not in self.request.texts:
            raise KeyError(f"Key '{key}' is not part of the request")
        slot = self.translations.setdefault(locale, {})
        if key in slot:
            raise ValueError(f"Translation for '{locale}/{key}' was already resolved")
        for value_filter in self._value_filters:
            value = value_filter(locale, value)
        slot[key] = value
        if cached:
            self.cached.setdefault(locale, set()).add(key)
        output = TranslationOutput(key=key, value=value, locale=locale, cached=cached,
                                   metadata=MappingProxyType(dict(metadata or {})))
        self.outputs.append(output)
        if self._output_sink is not None:
            self._output_sink(output)
        return output

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def set_plugin_data(self, plugin: str, key: str, value: Any) -> None:
        self.plugin_data.setdefault(plugin, {})[key] = value

    def get_plugin_data(self, plugin: str, key: str, default: Any = None) -> Any:
        return self.plugin_data.get(plugin, {}).get(key, default)

    def plugin_config(self, plugin: str) -> Dict[str, Any]:
        return self.plugin_configs.get(plugin, {})

    def pending_keys(self, locale: str) -> List[str]:
        """Keys still in the working set that have no translation for ``locale``."""
        done = self.translations.get(locale, {})
        return [key for key in self.texts if key not in done]

    def unresolved_keys(self, locale: str) -> List[str]:
        done = self.translations.get(locale, {})
        return [key for key in self.request.texts if key not in done]

    def complete(self) -> None:
        self.state = 'completed'
        self.finished_at = time.monotonic()

    @property
    def duration(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only copy of the observable state, handed to observers and terminators."""
        return MappingProxyType({
            'state': self.state,
            'stage': self.current_stage,
            'source_locale': self.request.source_locale,
            'target_locales': self.request.target_locales,
            'tenant_id': self.request.tenant_id,
            'key_count': len(self.request.texts),
            'pending_key_count': len(self.texts),
            'translations': copy.deepcopy(self.translations),
            'warnings': tuple(self.warnings),
            'errors': tuple(self.errors),
            'token_usage': self.token_usage.usage,
            'duration': self.duration,
        })


@dataclass
class TranslationResult:
    """What a caller gets back from :func:`ai_translator.api.translate`."""
    translations: Dict[str, Dict[str, str]]
    token_usage: TokenUsage
    warnings: List[str]
    source_locale: str
    target_locales: Tuple[str, ...]
    errors: List[str] = field(default_factory=list)
    outputs: List[TranslationOutput] = field(default_factory=list)
    duration: float = 0.0

    @classmethod
    def from_context(cls, context: TranslationContext) -> "TranslationResult":
        usage = replace(context.token_usage.usage, final=True)
        return cls(
            translations={locale: dict(values) for locale, values in context.translations.items()},
            token_usage=usage,
            warnings=list(context.warnings),
            source_locale=context.request.source_locale,
            target_locales=tuple(context.request.target_locales),
            errors=list(context.errors),
            outputs=list(context.outputs),
            duration=context.duration,
        )

    def get_translation(self, key: str, locale: Optional[str] = None) -> Optional[str]:
        locale = locale or self.target_locales[0]
        return self.translations.get(locale, {}).get(key)

    @property
    def total_tokens(self) -> int:
        return self.token_usage.total_tokens

    def estimate_cost(self, input_rate: float = 0.00001, output_rate: float = 0.00003) -> float:
        """Rough cost estimate from per-token rates."""
        return self.token_usage.input_tokens * input_rate + self.token_usage.output_tokens * output_rate
