"""
Translation context.

Collects existing source/target pairs from the project's other catalogs so
a backend can keep terminology and tone consistent with what is already
translated. Catalogs are configured as path templates with a ``{locale}``
field, or as ``{'source': path, 'target': template}`` mappings when the
source file does not follow the template (``app.properties`` next to
``app_de.properties``). Files closest in name to the one being translated
are read first.
"""
import os
from difflib import SequenceMatcher
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ai_translator.catalog import open_catalog
from ai_translator.models import PipelineStage, TranslationContext
from ai_translator.plugins.base import MiddlewarePlugin, NextHandler

ContextPair = Dict[str, Optional[str]]

SHORT_TEXT_LENGTH = 50
SHORT_TEXT_SHARE = 0.7


def catalog_stem(path: str) -> str:
    """File name without extension and locale suffix, e.g. ``app`` for ``i18n/app_{locale}.properties``."""
    name = os.path.splitext(os.path.basename(path.replace('{locale}', '')))[0]
    return name.rstrip('_-.') or name


def prioritize(pairs: List[ContextPair], limit: int) -> List[ContextPair]:
    """Short strings first, up to 70% of ``limit``, then the rest in file order."""
    if limit <= 0:
        return []
    short_cap = int(limit * SHORT_TEXT_SHARE)
    chosen = [pair for pair in pairs if len(pair['source'] or '') < SHORT_TEXT_LENGTH][:short_cap]
    taken = {id(pair) for pair in chosen}
    for pair in pairs:
        if len(chosen) >= limit:
            break
        if id(pair) not in taken:
            chosen.append(pair)
    return chosen


class TranslationContextPlugin(MiddlewarePlugin):
    """Stores ``{locale: {file stem: [pairs]}}`` for the prompts of the translation stage."""
    name = 'translation_context'
    priority = 50
    stage = PipelineStage.PREPARATION
    default_config: Mapping[str, Any] = {
        'catalogs': [],
        'max_context_items': 100,
        'max_per_file': 20,
        'include_untranslated': True,
    }

    def _catalog_paths(self, context: TranslationContext, locale: str) -> List[Tuple[str, str, str]]:
        entries = list(self.settings.for_context(context, 'catalogs', []) or [])
        entries.extend(context.request.get_option('context_catalogs') or [])
        paths = []
        for entry in entries:
            if isinstance(entry, Mapping):
                template = str(entry['target'])
                source = str(entry.get('source') or template.format(locale=context.request.source_locale))
            else:
                template = str(entry)
                source = template.format(locale=context.request.source_locale)
            paths.append((catalog_stem(template), source, template.format(locale=locale)))
        return paths

    def _current_stem(self, context: TranslationContext) -> Optional[str]:
        current = context.metadata.get('file') or context.request.get_option('source_file')
        return catalog_stem(str(current)) if current else None

    def collect(self, context: TranslationContext, locale: str) -> Dict[str, List[ContextPair]]:
        paths = self._catalog_paths(context, locale)
        if not paths:
            return {}
        current = self._current_stem(context)
        if current:
            paths.sort(key=lambda item: SequenceMatcher(None, current, item[0]).ratio(), reverse=True)

        max_items = int(self.settings.for_context(context, 'max_context_items', 100))
        max_per_file = int(self.settings.for_context(context, 'max_per_file', 20))
        include_untranslated = bool(self.settings.for_context(context, 'include_untranslated', True))
        per_file = min(max_per_file, max_items // len(paths) // 2 + 1)

        collected: Dict[str, List[ContextPair]] = {}
        remaining = max_items
        for stem, source_path, target_path in paths:
            if remaining <= 0:
                break
            if not os.path.exists(source_path):
                self.settings.debug("Skipping missing source catalog %s", source_path)
                continue
            try:
                sources = open_catalog(source_path).flatten()
                targets = open_catalog(target_path).flatten()
            except ValueError as e:
                self.settings.warning("Cannot read context catalog %s: %s", source_path, e)
                continue
            pairs: List[ContextPair] = []
            for key, text in sources.items():
                if not text.strip() or (stem == current and key in context.request.texts):
                    continue
                target = targets.get(key) or None
                if target is None and not include_untranslated:
                    continue
                pairs.append({'key': key, 'source': text, 'target': target})
            chosen = prioritize(pairs, min(per_file, remaining))
            if chosen:
                collected.setdefault(stem, []).extend(chosen)
                remaining -= len(chosen)
        return collected

    async def handle(self, context: TranslationContext, next_handler: NextHandler) -> None:
        collected = {locale: self.collect(context, locale) for locale in context.request.target_locales}
        collected = {locale: files for locale, files in collected.items() if files}
        if collected:
            context.set_plugin_data(self.name, 'global_translation_context', collected)
            for locale, files in collected.items():
                self.settings.info("%s: %d context pair(s) from %d catalog(s)",
                                   locale, sum(len(pairs) for pairs in files.values()), len(files))
        await next_handler(context)


def context_rules(files: Mapping[str, List[ContextPair]]) -> List[str]:
    """Rule lines asking the backend to stay consistent with translated pairs."""
    return [
        f'Stay consistent with the existing translation "{pair["source"]}" -> "{pair["target"]}".'
        for pairs in files.values() for pair in pairs if pair.get('target')
    ]
