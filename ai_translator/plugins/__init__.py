from ai_translator.plugins.base import MiddlewarePlugin, ObserverPlugin, PluginRole, PluginSettings, ProviderPlugin
from ai_translator.plugins.diff_tracking import DiffTrackingPlugin
from ai_translator.plugins.glossary import GlossaryPlugin
from ai_translator.plugins.multi_provider import MultiProviderPlugin
from ai_translator.plugins.output_writer import OutputWriterPlugin
from ai_translator.plugins.pii_masking import PIIMaskingPlugin
from ai_translator.plugins.progress import ProgressObserver
from ai_translator.plugins.token_chunking import TokenChunkingPlugin
from ai_translator.plugins.translation_context import TranslationContextPlugin
from ai_translator.plugins.validation import ValidationPlugin

BUILTIN_PLUGINS = (
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

__all__ = [
    'BUILTIN_PLUGINS',
    'DiffTrackingPlugin',
    'GlossaryPlugin',
    'MiddlewarePlugin',
    'MultiProviderPlugin',
    'ObserverPlugin',
    'OutputWriterPlugin',
    'PIIMaskingPlugin',
    'PluginRole',
    'PluginSettings',
    'ProgressObserver',
    'ProviderPlugin',
    'TokenChunkingPlugin',
    'TranslationContextPlugin',
    'ValidationPlugin',
]
