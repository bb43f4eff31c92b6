"""
Diff tracking.

Keys whose translation already exists for a locale are taken out of the
work before anything is sent to a backend. Existing translations come from
the target catalog (anything it reports as translated) and, when
``use_cache`` is on, from the state file written after the previous
successful run. With a state directory, a key whose source text changed
since that run is translated again even if the catalog has a value.
"""
import hashlib
import json
import os
import re
from typing import Any, Dict, Mapping, Optional

from ai_translator.catalog import CatalogTransformer, open_catalog
from ai_translator.models import PipelineStage, TranslationContext
from ai_translator.plugins.base import MiddlewarePlugin, NextHandler


def text_checksum(text: str, normalize_whitespace: bool = True) -> str:
    if normalize_whitespace:
        text = re.sub(r'\s+', ' ', text).strip()
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def resolve_catalogs(context: TranslationContext, configured: Optional[Mapping[str, Any]] = None,
                     pattern: Optional[str] = None) -> Dict[str, CatalogTransformer]:
    """
    Catalogs per target locale.

    Values may be transformer objects or file paths. ``pattern`` is a path
    template with a ``{locale}`` field used for locales without an entry.
    The request option ``catalogs`` takes precedence over ``configured``.
    """
    entries: Dict[str, Any] = dict(configured or {})
    entries.update(context.request.get_option('catalogs') or {})
    catalogs: Dict[str, CatalogTransformer] = {}
    for locale in context.request.target_locales:
        value = entries.get(locale)
        if value is None and pattern:
            value = pattern.format(locale=locale)
        if value is None:
            continue
        catalogs[locale] = open_catalog(value) if isinstance(value, str) else value
    return catalogs


class DiffTrackingPlugin(MiddlewarePlugin):
    name = 'diff_tracking'
    priority = 95
    stage = PipelineStage.DIFF_DETECTION
    default_config: Mapping[str, Any] = {
        'state_directory': None,
        'catalogs': {},
        'catalog_pattern': None,
        'use_cache': False,
        'normalize_whitespace': True,
    }

    def _state_path(self, context: TranslationContext, locale: str) -> Optional[str]:
        directory = self.settings.for_context(context, 'state_directory')
        if not directory:
            return None
        tenant = context.request.tenant_id or 'default'
        return os.path.join(directory, f"{tenant}_{context.request.source_locale}_{locale}.json")

    def _load_state(self, path: Optional[str]) -> Dict[str, Any]:
        if not path or not os.path.exists(path):
            return {}
        try:
            with open(path, 'r', encoding='utf-8') as stream:
                state = json.load(stream)
        except (OSError, json.JSONDecodeError) as e:
            self.settings.warning("Ignoring unreadable state file %s: %s", path, e)
            return {}
        return state if isinstance(state, dict) else {}

    async def handle(self, context: TranslationContext, next_handler: NextHandler) -> None:
        normalize = bool(self.settings.for_context(context, 'normalize_whitespace', True))
        use_cache = bool(self.settings.for_context(context, 'use_cache', False))
        catalogs = resolve_catalogs(
            context,
            self.settings.for_context(context, 'catalogs', {}),
            self.settings.for_context(context, 'catalog_pattern'),
        )
        checksums = {key: text_checksum(entry.text, normalize) for key, entry in context.request.texts.items()}
        stats: Dict[str, Dict[str, int]] = {}

        for locale in context.request.target_locales:
            state = self._load_state(self._state_path(context, locale))
            previous = state.get('texts', {})
            stored = state.get('translations', {}) if use_cache else {}
            catalog = catalogs.get(locale)
            reused = changed = 0
            for key in context.pending_keys(locale):
                if key in previous and previous[key] != checksums[key]:
                    changed += 1
                    continue
                value = None
                if catalog is not None and catalog.is_translated(key):
                    value = catalog.get_string(key)
                elif key in previous and stored.get(key):
                    value = stored[key]
                if value is None:
                    continue
                context.add_translation(locale, key, value, cached=True, metadata={'source': 'diff_tracking'})
                reused += 1
            stats[locale] = {'reused': reused, 'changed': changed, 'pending': len(context.pending_keys(locale))}
            self.settings.info("%s: %d reused, %d changed, %d to translate",
                               locale, reused, changed, stats[locale]['pending'])

        for key in list(context.texts):
            if all(key in context.translations.get(locale, {}) for locale in context.request.target_locales):
                del context.texts[key]

        context.set_plugin_data(self.name, 'catalogs', catalogs)
        context.set_plugin_data(self.name, 'checksums', checksums)
        context.set_plugin_data(self.name, 'stats', stats)
        await next_handler(context)

    def terminate(self, context: TranslationContext, snapshot: Mapping[str, Any]) -> None:
        if snapshot['state'] != 'completed' or self.name in context.disabled_plugins:
            return
        checksums = context.get_plugin_data(self.name, 'checksums')
        if not checksums:
            return
        for locale in context.request.target_locales:
            path = self._state_path(context, locale)
            if not path:
                return
            state = self._load_state(path)
            texts = state.get('texts', {})
            translations = state.get('translations', {})
            for key, value in snapshot['translations'].get(locale, {}).items():
                texts[key] = checksums[key]
                translations[key] = value
            os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
            with open(path, 'w', encoding='utf-8') as stream:
                json.dump({'locale': locale, 'texts': texts, 'translations': translations},
                          stream, ensure_ascii=False, indent=2)
            self.settings.debug("Saved state for %s to %s", locale, path)
