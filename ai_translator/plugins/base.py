"""
The three plugin roles.

A plugin is a middleware (wraps the rest of a stage), a provider (offers
named services and runs at chosen stages) or an observer (listens to
lifecycle events). Configuration merging and logging live in
:class:`PluginSettings`, which every role composes instead of inheriting.
"""
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from ai_translator.models import PipelineStage, TranslationContext

if TYPE_CHECKING:
    from ai_translator.pipeline import PipelineEvent, TranslationPipeline

NextHandler = Callable[[TranslationContext], Awaitable[None]]


class PluginRole(str, Enum):
    MIDDLEWARE = 'middleware'
    PROVIDER = 'provider'
    OBSERVER = 'observer'


def _copy_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return deep_merge(value, None)
    if isinstance(value, list):
        return [_copy_value(item) for item in value]
    return value


def deep_merge(base: Mapping[str, Any], override: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Return a new dict with ``override`` merged recursively over ``base``.

    Nested mappings and lists are copied; other values (numbers, strings,
    catalog objects) are shared.
    """
    merged = {key: _copy_value(value) for key, value in base.items()}
    for key, value in (override or {}).items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = _copy_value(value)
    return merged


class PluginSettings:
    """Merged configuration plus a logger that prefixes messages with the plugin name."""

    def __init__(self, name: str, defaults: Optional[Mapping[str, Any]] = None,
                 config: Optional[Mapping[str, Any]] = None):
        self.name = name
        self.config = deep_merge(defaults or {}, config)
        self.logger = logging.getLogger(f"ai_translator.plugins.{name}")

    def configure(self, config: Mapping[str, Any]) -> None:
        self.config = deep_merge(self.config, config)

    def resolve(self, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        return deep_merge(self.config, overrides) if overrides else self.config

    def get(self, path: str, default: Any = None, overrides: Optional[Mapping[str, Any]] = None) -> Any:
        """Look up a dotted path such as ``judge.model``."""
        value: Any = self.resolve(overrides)
        for part in path.split('.'):
            if not isinstance(value, Mapping) or part not in value:
                return default
            value = value[part]
        return value

    def for_context(self, context: TranslationContext, path: str, default: Any = None) -> Any:
        """Like :meth:`get`, with the request's tenant and per-request overrides applied."""
        return self.get(path, default, overrides=context.plugin_config(self.name))

    def debug(self, message: str, *args) -> None:
        self.logger.debug("[%s] " + message, self.name, *args)

    def info(self, message: str, *args) -> None:
        self.logger.info("[%s] " + message, self.name, *args)

    def warning(self, message: str, *args) -> None:
        self.logger.warning("[%s] " + message, self.name, *args)

    def error(self, message: str, *args) -> None:
        self.logger.error("[%s] " + message, self.name, *args)


class MiddlewarePlugin(ABC):
    """
    Wraps the rest of a stage's chain.

    ``handle`` receives the context and a ``next_handler`` coroutine function
    for the remainder of the chain. It may work before and/or after awaiting
    it, or not await it at all to short-circuit. A middleware without a
    ``stage`` wraps every stage of the run.
    """
    role = PluginRole.MIDDLEWARE
    name = 'middleware'
    version = '1.0.0'
    priority = 0
    dependencies: Tuple[str, ...] = ()
    default_config: Mapping[str, Any] = {}
    stage: Optional[str] = None

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        self.settings = PluginSettings(self.name, self.default_config, config)

    @abstractmethod
    async def handle(self, context: TranslationContext, next_handler: NextHandler) -> None:
        ...

    def should_skip(self, context: TranslationContext) -> bool:
        return self.name in context.disabled_plugins or bool(context.request.get_option(f'skip_{self.name}'))

    async def __call__(self, context: TranslationContext, next_handler: NextHandler) -> None:
        if self.should_skip(context):
            self.settings.debug("skipped for this request")
            await next_handler(context)
            return
        await self.handle(context, next_handler)

    def terminate(self, context: TranslationContext, snapshot: Mapping[str, Any]) -> None:
        """Called once after the run, successful or not."""

    def boot(self, pipeline: "TranslationPipeline") -> None:
        pipeline.register_middleware(self.stage, self, self.priority)
        pipeline.register_terminator(self.terminate, self.priority)


class ProviderPlugin(ABC):
    """Offers named services and runs ``execute`` at the stages returned by ``when``."""
    role = PluginRole.PROVIDER
    name = 'provider'
    version = '1.0.0'
    priority = 0
    dependencies: Tuple[str, ...] = ()
    default_config: Mapping[str, Any] = {}

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        self.settings = PluginSettings(self.name, self.default_config, config)

    @abstractmethod
    def provides(self) -> List[str]:
        ...

    def when(self) -> List[str]:
        return [PipelineStage.TRANSLATION]

    @abstractmethod
    async def execute(self, context: TranslationContext, **kwargs) -> Any:
        ...

    def should_provide(self, context: TranslationContext) -> bool:
        if self.name in context.disabled_plugins:
            return False
        requested = context.request.get_option('services')
        if requested is not None:
            return any(service in requested for service in self.provides())
        return True

    async def run_stage(self, context: TranslationContext) -> None:
        if self.should_provide(context):
            await self.execute(context)

    def boot(self, pipeline: "TranslationPipeline") -> None:
        for service in self.provides():
            pipeline.register_service(service, self.execute)
        for stage in self.when():
            pipeline.register_stage(stage, self.run_stage, self.priority)


class ObserverPlugin(ABC):
    """
    Listens to pipeline events.

    Observers receive a read-only :class:`PipelineEvent`, never the live
    context. ``subscribe`` maps event names (``fnmatch`` patterns allowed)
    to method names.
    """
    role = PluginRole.OBSERVER
    name = 'observer'
    version = '1.0.0'
    priority = 0
    dependencies: Tuple[str, ...] = ()
    default_config: Mapping[str, Any] = {}

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        self.settings = PluginSettings(self.name, self.default_config, config)

    @abstractmethod
    def subscribe(self) -> Dict[str, str]:
        ...

    def should_observe(self, event: "PipelineEvent") -> bool:
        return self.name not in event.disabled_plugins and not event.options.get(f'disable_{self.name}')

    def boot(self, pipeline: "TranslationPipeline") -> None:
        for event_name, method_name in self.subscribe().items():
            pipeline.on(event_name, self._listener(getattr(self, method_name)))

    def _listener(self, method: Callable[["PipelineEvent"], None]) -> Callable[["PipelineEvent"], None]:
        def listener(event: "PipelineEvent") -> None:
            if self.should_observe(event):
                method(event)
        return listener
