"""
Entry points: :func:`translate`, default pipeline assembly and the fluent
:class:`TranslationBuilder`.
"""
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Union

from ai_translator.app_config import AppConfig
from ai_translator.backend_client import BackendClient
from ai_translator.models import (
    ProviderConfig,
    SourceEntry,
    TranslationCallbacks,
    TranslationOutput,
    TranslationRequest,
    TranslationResult,
)
from ai_translator.pipeline import TranslationPipeline
from ai_translator.plugin_registry import Plugin, PluginRegistry
from ai_translator.plugins import (
    BUILTIN_PLUGINS,
    DiffTrackingPlugin,
    GlossaryPlugin,
    MultiProviderPlugin,
    OutputWriterPlugin,
    PIIMaskingPlugin,
    ProgressObserver,
    TokenChunkingPlugin,
    TranslationContextPlugin,
    ValidationPlugin,
)
from ai_translator.plugins.base import deep_merge

logger = logging.getLogger(__name__)

BackendFactoryType = Callable[[ProviderConfig], BackendClient]


def plugin_configs_from_app_config(app_config: AppConfig) -> Dict[str, Dict[str, Any]]:
    """Map the flat application settings onto the built-in plugins' configuration."""
    multi_provider: Dict[str, Any] = {
        'execution_mode': app_config.execution_mode,
        'consensus_threshold': app_config.consensus_threshold,
        'fallback_on_failure': app_config.fallback_on_failure,
        'retry_attempts': app_config.retry_attempts,
        'retry_base_delay': app_config.retry_base_delay,
        'timeout': app_config.request_timeout,
        'temperature_overrides': dict(app_config.temperature_overrides),
        'max_concurrency': app_config.max_concurrent_api_calls,
        'requests_per_minute': app_config.requests_per_minute,
        'language_codes': dict(app_config.language_codes),
        'show_progress': app_config.show_progress,
        'dry_run': app_config.dry_run,
        'judge': app_config.judge,
    }
    if app_config.providers:
        multi_provider['providers'] = list(app_config.providers)
    return {
        MultiProviderPlugin.name: multi_provider,
        TokenChunkingPlugin.name: {'max_tokens_per_chunk': app_config.max_tokens_per_chunk},
        DiffTrackingPlugin.name: {'state_directory': app_config.state_directory},
        GlossaryPlugin.name: {'glossary': dict(app_config.glossary), 'style_rules': dict(app_config.style_rules)},
    }


def build_registry(app_config: Optional[AppConfig] = None,
                   backend_factory: Optional[BackendFactoryType] = None,
                   extra_plugins: Sequence[Plugin] = ()) -> PluginRegistry:
    """
    Registry with the built-in plugins configured from ``app_config``.

    The ``plugins`` section of the configuration may disable a built-in
    plugin (``enabled: false``), override its settings, or load any other
    plugin class registered on the returned registry by name.
    """
    registry = PluginRegistry()
    for plugin_class in BUILTIN_PLUGINS:
        registry.register_class(plugin_class)

    configs = plugin_configs_from_app_config(app_config) if app_config else {}
    plugin_settings: Mapping[str, Any] = app_config.plugins if app_config else {}

    for plugin_class in BUILTIN_PLUGINS:
        settings = plugin_settings.get(plugin_class.name) or {}
        if settings.get('enabled', True) is False:
            logger.info("Plugin '%s' disabled by configuration", plugin_class.name)
            continue
        overrides = settings.get('config', {k: v for k, v in settings.items() if k != 'enabled'})
        config = deep_merge(configs.get(plugin_class.name, {}), overrides)
        if plugin_class is MultiProviderPlugin:
            registry.register(MultiProviderPlugin(config, backend_factory=backend_factory))
        else:
            registry.register(plugin_class(config))

    for plugin in extra_plugins:
        registry.register(plugin)
    return registry


def build_default_pipeline(app_config: Optional[AppConfig] = None,
                           backend_factory: Optional[BackendFactoryType] = None,
                           extra_plugins: Sequence[Plugin] = (),
                           extra_stages: Sequence[str] = ()) -> TranslationPipeline:
    return TranslationPipeline(build_registry(app_config, backend_factory, extra_plugins), extra_stages=extra_stages)


async def translate(request: TranslationRequest,
                    pipeline: Optional[TranslationPipeline] = None,
                    callbacks: Optional[TranslationCallbacks] = None,
                    config: Optional[AppConfig] = None) -> TranslationResult:
    """
    Run ``request`` to completion.

    Args:
        request: What to translate.
        pipeline: Pipeline to use. Built from ``config`` when omitted.
        callbacks: Progress hooks.
        config: Application configuration for the default pipeline.

    Returns:
        The translations, the accumulated token usage and the warnings.

    Raises:
        UnconfiguredProvider: A provider cannot be dispatched.
        TranslationFailed: Not a single key could be translated.
    """
    pipeline = pipeline or build_default_pipeline(config)
    context = pipeline.create_context(request, callbacks)
    await pipeline.run(context)
    return TranslationResult.from_context(context)


class TranslationBuilder:
    """
    Fluent construction of a request.

    Example::

        result = await (TranslationBuilder(config=app_config)
                        .source('en')
                        .to(['ko', 'ja'])
                        .with_glossary({'Bisq': 'Bisq'})
                        .translate({'greeting': 'Hello'}))
    """

    def __init__(self, pipeline: Optional[TranslationPipeline] = None, config: Optional[AppConfig] = None,
                 backend_factory: Optional[BackendFactoryType] = None):
        self._pipeline = pipeline
        self._app_config = config
        self._backend_factory = backend_factory
        self.reset()

    def reset(self) -> "TranslationBuilder":
        self._source_locale: Optional[str] = self._app_config.source_locale if self._app_config else None
        self._target_locales: List[str] = list(self._app_config.target_locales) if self._app_config else []
        self._options: Dict[str, Any] = {}
        self._metadata: Dict[str, Any] = {}
        self._plugin_configs: Dict[str, Dict[str, Any]] = {}
        self._extra_plugins: List[Plugin] = []
        self._tenant_id: Optional[str] = None
        self._references: Dict[str, Mapping[str, str]] = {}
        self._context_description: Optional[str] = None
        self._callbacks: Optional[TranslationCallbacks] = None
        self._progress: Optional[Callable[[TranslationOutput], None]] = None
        return self

    # --- locales ---

    def source(self, locale: str) -> "TranslationBuilder":
        self._source_locale = locale
        return self

    def to(self, locales: Union[str, Sequence[str]]) -> "TranslationBuilder":
        self._target_locales = [locales] if isinstance(locales, str) else list(locales)
        return self

    # --- plugin settings ---

    def _configure(self, plugin: str, config: Mapping[str, Any]) -> "TranslationBuilder":
        self._plugin_configs[plugin] = deep_merge(self._plugin_configs.get(plugin, {}), config)
        return self

    def with_providers(self, providers: Union[Sequence[Any], Mapping[str, Any]]) -> "TranslationBuilder":
        return self._configure(MultiProviderPlugin.name, {'providers': providers})

    def with_judge(self, judge: Union[ProviderConfig, Mapping[str, Any], None]) -> "TranslationBuilder":
        return self._configure(MultiProviderPlugin.name, {'judge': judge})

    def with_glossary(self, terms: Mapping[str, Any]) -> "TranslationBuilder":
        self._options['glossary'] = deep_merge(self._options.get('glossary', {}), terms)
        return self

    def with_style(self, style: str, custom_prompt: Optional[str] = None,
                   locale: str = '*') -> "TranslationBuilder":
        rules = self._options.setdefault('style_rules', {})
        rules.setdefault(locale, []).append(custom_prompt or f"Use a {style} style.")
        self._metadata['style'] = style
        return self

    def track_changes(self, enable: bool = True, state_directory: Optional[str] = None,
                      catalogs: Optional[Mapping[str, Any]] = None) -> "TranslationBuilder":
        self._options['skip_diff_tracking'] = not enable
        config: Dict[str, Any] = {}
        if state_directory:
            config['state_directory'] = state_directory
        if catalogs:
            self._options['catalogs'] = dict(catalogs)
        return self._configure(DiffTrackingPlugin.name, config)

    def with_token_chunking(self, max_tokens: int = 2000) -> "TranslationBuilder":
        self._options['skip_token_chunking'] = False
        return self._configure(TokenChunkingPlugin.name, {'max_tokens_per_chunk': max_tokens})

    def with_validation(self, checks: Sequence[str] = ('all',)) -> "TranslationBuilder":
        names = ('placeholders', 'html_tags', 'length_ratio', 'encoding')
        enabled = set(names) if 'all' in checks else set(checks)
        self._options['skip_validation'] = False
        return self._configure(ValidationPlugin.name, {'checks': {name: name in enabled for name in names}})

    def mask_pii(self, enable: bool = True, **config: Any) -> "TranslationBuilder":
        """Mask personal data before texts reach a backend; ``config`` overrides the masking settings."""
        self._options['mask_pii'] = enable
        return self._configure(PIIMaskingPlugin.name, config)

    def with_context_catalogs(self, catalogs: Sequence[Any], max_items: Optional[int] = None) -> "TranslationBuilder":
        """Show existing translations from ``catalogs`` (path templates with ``{locale}``) to the backend."""
        config: Dict[str, Any] = {'catalogs': list(catalogs)}
        if max_items is not None:
            config['max_context_items'] = max_items
        return self._configure(TranslationContextPlugin.name, config)

    def with_plugin(self, plugin: Plugin) -> "TranslationBuilder":
        self._extra_plugins.append(plugin)
        self._pipeline = None
        return self

    def configure_plugin(self, name: str, config: Mapping[str, Any]) -> "TranslationBuilder":
        return self._configure(name, config)

    # --- request details ---

    def for_tenant(self, tenant_id: str) -> "TranslationBuilder":
        self._tenant_id = tenant_id
        return self

    def with_reference(self, references: Mapping[str, Mapping[str, str]]) -> "TranslationBuilder":
        """Approved translations per ``locale -> key -> text``, shown to the backend as references."""
        self._references.update(references)
        return self

    def with_context(self, description: Optional[str] = None, screenshot: Optional[str] = None) -> "TranslationBuilder":
        self._context_description = description
        if screenshot:
            self._metadata['screenshot'] = screenshot
        return self

    def with_key_prefix(self, prefix: str) -> "TranslationBuilder":
        self._options['key_prefix'] = prefix
        return self

    def with_metadata(self, metadata: Mapping[str, Any]) -> "TranslationBuilder":
        self._metadata.update(metadata)
        return self

    def with_callbacks(self, callbacks: TranslationCallbacks) -> "TranslationBuilder":
        self._callbacks = callbacks
        return self

    def on_progress(self, callback: Callable[[TranslationOutput], None]) -> "TranslationBuilder":
        self._progress = callback
        return self

    def option(self, key: str, value: Any) -> "TranslationBuilder":
        self._options[key] = value
        return self

    def options(self, options: Mapping[str, Any]) -> "TranslationBuilder":
        self._options.update(options)
        return self

    # --- execution ---

    def validate(self) -> None:
        if not self._source_locale:
            raise ValueError("Source locale is required")
        if not self._target_locales:
            raise ValueError("At least one target locale is required")

    def get_config(self) -> Dict[str, Any]:
        return {
            'source_locale': self._source_locale,
            'target_locales': list(self._target_locales),
            'options': dict(self._options),
            'metadata': dict(self._metadata),
            'plugin_configs': dict(self._plugin_configs),
            'tenant_id': self._tenant_id,
        }

    def build_request(self, texts: Mapping[str, Any]) -> TranslationRequest:
        self.validate()
        entries = {}
        for key, value in texts.items():
            entry = value if isinstance(value, SourceEntry) else None
            if entry is None and isinstance(value, Mapping):
                entry = SourceEntry(str(value.get('text', '')), value.get('context'), dict(value.get('references') or {}))
            if entry is None:
                entry = SourceEntry(str(value))
            references = dict(entry.references)
            for locale, values in self._references.items():
                if key in values and locale not in references:
                    references[locale] = values[key]
            entries[key] = SourceEntry(entry.text, entry.context or self._context_description, references)
        return TranslationRequest(
            texts=entries,
            source_locale=self._source_locale,
            target_locales=tuple(self._target_locales),
            options=self._options,
            metadata=self._metadata,
            tenant_id=self._tenant_id,
            plugin_configs=self._plugin_configs,
        )

    def pipeline(self) -> TranslationPipeline:
        if self._pipeline is None:
            self._pipeline = build_default_pipeline(self._app_config, self._backend_factory, self._extra_plugins)
        return self._pipeline

    async def stream(self, texts: Mapping[str, Any]) -> AsyncIterator[TranslationOutput]:
        """Yield each key/locale pair as soon as it is translated."""
        request = self.build_request(texts)
        async for output in self.pipeline().process(request, callbacks=self._callbacks):
            if self._progress:
                self._progress(output)
            yield output

    async def translate(self, texts: Mapping[str, Any]) -> TranslationResult:
        request = self.build_request(texts)
        pipeline = self.pipeline()
        context = pipeline.create_context(request, self._callbacks)
        async for output in pipeline.process(request, context=context):
            if self._progress:
                self._progress(output)
        return TranslationResult.from_context(context)
