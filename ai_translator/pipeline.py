"""
Pipeline orchestrator.

A run walks a fixed list of stages over one :class:`TranslationContext`. For
each stage the stage-bound middleware plugins are chained in priority order
around the stage's handlers; middleware without a stage wraps the walk over
all stages. Completed key/locale pairs are yielded from :meth:`process` as
soon as a handler records them.
"""
import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from types import MappingProxyType
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from ai_translator.exceptions import ServiceNotFound
from ai_translator.models import (
    PipelineStage,
    TranslationCallbacks,
    TranslationContext,
    TranslationOutput,
    TranslationRequest,
)
from ai_translator.plugin_registry import PluginRegistry
from ai_translator.plugins.base import NextHandler, deep_merge

logger = logging.getLogger(__name__)

StageHandler = Callable[[TranslationContext], Awaitable[None]]
Middleware = Callable[[TranslationContext, NextHandler], Awaitable[None]]
Terminator = Callable[[TranslationContext, Mapping[str, Any]], None]

_DONE = object()


@dataclass(frozen=True)
class PipelineEvent:
    """What observers get: a name and a frozen view of the run."""
    name: str
    stage: Optional[str]
    snapshot: Mapping[str, Any]
    options: Mapping[str, Any] = field(default_factory=dict)
    disabled_plugins: FrozenSet[str] = frozenset()
    data: Mapping[str, Any] = field(default_factory=dict)


class TranslationPipeline:
    """
    Drives requests through the stages.

    The stage list is fixed at construction. Plugins from ``registry`` are
    booted once, in dependency order, on the first call to :meth:`boot` or
    :meth:`process`; after that the pipeline is read-only and can serve
    concurrent requests, each with its own context.

    Args:
        registry: The plugins to boot.
        stages: The stage order. Must contain the translation, validation
            and output stages.
        extra_stages: Custom stages appended to ``stages``.
    """

    def __init__(self, registry: Optional[PluginRegistry] = None,
                 stages: Sequence[str] = PipelineStage.DEFAULT_ORDER,
                 extra_stages: Sequence[str] = ()):
        order = list(dict.fromkeys(list(stages) + list(extra_stages)))
        missing = [stage for stage in PipelineStage.ESSENTIAL if stage not in order]
        if missing:
            raise ValueError(f"Pipeline is missing required stage(s): {', '.join(missing)}")
        self.registry = registry or PluginRegistry()
        self._stage_order: Tuple[str, ...] = tuple(order)
        self._stages: Dict[str, List[Tuple[int, int, StageHandler]]] = {stage: [] for stage in order}
        self._middlewares: Dict[Optional[str], List[Tuple[int, int, Middleware]]] = {}
        self._services: Dict[str, Callable[..., Awaitable[Any]]] = {}
        self._terminators: List[Tuple[int, int, Terminator]] = []
        self._listeners: List[Tuple[str, Callable[[PipelineEvent], None]]] = []
        self._sequence = itertools.count()
        self._booted = False

    @property
    def stages(self) -> Tuple[str, ...]:
        return self._stage_order

    # --- registration (used by plugins while booting) ---

    def _check_stage(self, stage: str) -> None:
        if stage not in self._stages:
            raise ValueError(f"Unknown stage '{stage}'. Known stages: {', '.join(self._stage_order)}")

    def register_stage(self, stage: str, handler: StageHandler, priority: int = 0) -> None:
        self._check_stage(stage)
        self._stages[stage].append((priority, next(self._sequence), handler))
        self._stages[stage].sort(key=lambda entry: (-entry[0], entry[1]))

    def register_middleware(self, stage: Optional[str], middleware: Middleware, priority: int = 0) -> None:
        if stage is not None:
            self._check_stage(stage)
        chain = self._middlewares.setdefault(stage, [])
        chain.append((priority, next(self._sequence), middleware))
        chain.sort(key=lambda entry: (-entry[0], entry[1]))

    def register_service(self, name: str, service: Callable[..., Awaitable[Any]]) -> None:
        self._services[name] = service

    def register_terminator(self, terminator: Terminator, priority: int = 0) -> None:
        self._terminators.append((priority, next(self._sequence), terminator))
        self._terminators.sort(key=lambda entry: (-entry[0], entry[1]))

    def on(self, event_pattern: str, listener: Callable[[PipelineEvent], None]) -> None:
        self._listeners.append((event_pattern, listener))

    def has_service(self, name: str) -> bool:
        return name in self._services

    def services(self) -> List[str]:
        return list(self._services)

    def stage_handlers(self, stage: str) -> List[StageHandler]:
        return [handler for _, _, handler in self._stages.get(stage, [])]

    def boot(self) -> None:
        if self._booted:
            return
        for plugin in self.registry.resolve_order():
            plugin.boot(self)
        self._booted = True
        logger.debug("Pipeline booted with plugins: %s", ', '.join(self.registry.names()) or '(none)')

    # --- events and services ---

    def emit(self, event_name: str, context: TranslationContext, **data: Any) -> None:
        event = PipelineEvent(
            name=event_name,
            stage=context.current_stage,
            snapshot=context.snapshot(),
            options=context.request.options,
            disabled_plugins=frozenset(context.disabled_plugins),
            data=MappingProxyType(data),
        )
        for pattern, listener in self._listeners:
            if fnmatchcase(event_name, pattern):
                try:
                    listener(event)
                except Exception as exc:
                    logger.error(f"Listener for '{event_name}' failed: {exc}", exc_info=True)

    async def execute_service(self, name: str, context: TranslationContext, **kwargs: Any) -> Any:
        if name not in self._services:
            raise ServiceNotFound(f"Service '{name}' not found")
        return await self._services[name](context, **kwargs)

    # --- running ---

    def create_context(self, request: TranslationRequest,
                       callbacks: Optional[TranslationCallbacks] = None) -> TranslationContext:
        """Fresh context with the request's tenant overlay and plugin overrides applied."""
        context = TranslationContext(request, callbacks)
        allow_list = set(request.plugins)
        for name in self.registry.names():
            if not self.registry.is_enabled_for(name, request.tenant_id) or (allow_list and name not in allow_list):
                context.disabled_plugins.add(name)
            context.plugin_configs[name] = deep_merge(
                self.registry.config_for(name, request.tenant_id),
                request.plugin_configs.get(name),
            )
        return context

    async def process(self, request: TranslationRequest,
                      context: Optional[TranslationContext] = None,
                      callbacks: Optional[TranslationCallbacks] = None) -> AsyncIterator[TranslationOutput]:
        """
        Run ``request`` and yield each key/locale pair as it completes.

        The sequence is single-pass. Outputs arrive in completion order, not
        source key order. Errors raised by any stage are re-raised here after
        the ``translation.failed`` event.
        """
        self.boot()
        if context is None:
            context = self.create_context(request, callbacks)
        queue: asyncio.Queue = asyncio.Queue()
        context.attach_output_sink(queue.put_nowait)
        task = asyncio.create_task(self.run(context))
        task.add_done_callback(lambda _: queue.put_nowait(_DONE))
        try:
            while True:
                output = await queue.get()
                if output is _DONE:
                    break
                yield output
            await task
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            context.attach_output_sink(None)

    async def run(self, context: TranslationContext) -> TranslationContext:
        """Run all stages over ``context`` without streaming the outputs."""
        self.boot()
        context.state = 'running'
        try:
            self.emit('translation.started', context)
            context.callbacks.get('on_started')(context.request)
            await self._run_chain(self._middlewares.get(None, []), context, self._execute_stages)
            self._record_unresolved(context)
            context.complete()
            self.emit('translation.completed', context)
        except Exception as exc:
            context.add_error(f"{exc.__class__.__name__}: {exc}")
            context.state = 'failed'
            logger.error(f"Translation pipeline failed: {exc}")
            self.emit('translation.failed', context, error=str(exc))
            raise
        finally:
            self._run_terminators(context)
        return context

    async def _run_chain(self, chain: List[Tuple[int, int, Middleware]], context: TranslationContext,
                         terminal: StageHandler) -> None:
        handlers = [middleware for _, _, middleware in chain]

        async def call(index: int, ctx: TranslationContext) -> None:
            if index == len(handlers):
                await terminal(ctx)
                return
            await handlers[index](ctx, lambda next_ctx: call(index + 1, next_ctx))

        await call(0, context)

    async def _execute_stages(self, context: TranslationContext) -> None:
        for stage in self._stage_order:
            context.current_stage = stage
            self.emit(f'stage.{stage}.started', context)

            async def run_handlers(ctx: TranslationContext, stage: str = stage) -> None:
                for _, _, handler in self._stages[stage]:
                    await handler(ctx)

            await self._run_chain(self._middlewares.get(stage, []), context, run_handlers)
            self.emit(f'stage.{stage}.completed', context)
        context.current_stage = None

    def _record_unresolved(self, context: TranslationContext) -> None:
        for locale in context.request.target_locales:
            for key in context.unresolved_keys(locale):
                message = f"Key '{key}' was not translated for locale '{locale}'"
                if message not in context.warnings:
                    context.add_warning(message)

    def _run_terminators(self, context: TranslationContext) -> None:
        snapshot = context.snapshot()
        for _, _, terminator in self._terminators:
            try:
                terminator(context, snapshot)
            except Exception as exc:
                logger.error(f"Terminator failed: {exc}", exc_info=True)
