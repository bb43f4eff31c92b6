from ai_translator.api import TranslationBuilder, build_default_pipeline, build_registry, translate
from ai_translator.exceptions import (
    CircularDependency,
    JudgeParseFailure,
    MissingDependency,
    PluginError,
    ProviderError,
    RetriesExhausted,
    ServiceNotFound,
    TranslationFailed,
    TranslatorError,
    UnconfiguredProvider,
    VerificationFailed,
)
from ai_translator.models import (
    PipelineStage,
    ProviderConfig,
    SourceEntry,
    TranslationCallbacks,
    TranslationOutput,
    TranslationRequest,
    TranslationResult,
)
from ai_translator.pipeline import TranslationPipeline
from ai_translator.plugin_registry import PluginRegistry

__all__ = [
    'CircularDependency',
    'JudgeParseFailure',
    'MissingDependency',
    'PipelineStage',
    'PluginError',
    'PluginRegistry',
    'ProviderConfig',
    'ProviderError',
    'RetriesExhausted',
    'ServiceNotFound',
    'SourceEntry',
    'TranslationBuilder',
    'TranslationCallbacks',
    'TranslationFailed',
    'TranslationOutput',
    'TranslationPipeline',
    'TranslationRequest',
    'TranslationResult',
    'TranslatorError',
    'UnconfiguredProvider',
    'VerificationFailed',
    'build_default_pipeline',
    'build_registry',
    'translate',
]
