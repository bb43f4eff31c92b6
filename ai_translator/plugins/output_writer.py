from typing import Any, Mapping

from ai_translator.models import PipelineStage, TranslationContext
from ai_translator.plugins.base import MiddlewarePlugin, NextHandler
from ai_translator.plugins.diff_tracking import resolve_catalogs


class OutputWriterPlugin(MiddlewarePlugin):
    """Writes new translations back into the target catalogs and saves them."""
    name = 'output_writer'
    priority = 0
    stage = PipelineStage.OUTPUT
    default_config: Mapping[str, Any] = {
        'catalogs': {},
        'catalog_pattern': None,
    }

    async def handle(self, context: TranslationContext, next_handler: NextHandler) -> None:
        await next_handler(context)

        catalogs = context.get_plugin_data('diff_tracking', 'catalogs') or resolve_catalogs(
            context,
            self.settings.for_context(context, 'catalogs', {}),
            self.settings.for_context(context, 'catalog_pattern'),
        )
        dry_run = bool(context.request.get_option('dry_run'))
        written = {}
        for locale, catalog in catalogs.items():
            cached = context.cached.get(locale, set())
            fresh = {key: value for key, value in context.translations.get(locale, {}).items() if key not in cached}
            if not fresh:
                continue
            if dry_run:
                self.settings.info("[Dry Run] Would write %d translation(s) to %s", len(fresh), catalog.path)
                continue
            for key, value in fresh.items():
                catalog.update_string(key, value)
            catalog.save()
            written[locale] = len(fresh)
            self.settings.info("Wrote %d translation(s) to %s", len(fresh), catalog.path)
        context.set_plugin_data(self.name, 'written', written)
