import csv
import json
import os
import re
from typing import Any, Dict, List, Mapping, Optional

from ai_translator.models import PipelineStage, TranslationContext
from ai_translator.plugins.base import ProviderPlugin


def normalize_glossary(glossary: Mapping[str, Any]) -> Dict[str, Dict[str, str]]:
    """
    Normalize glossary entries to ``term -> {locale: translation}``.

    A plain string value applies to every locale and is stored under ``*``.
    """
    normalized: Dict[str, Dict[str, str]] = {}
    for term, value in (glossary or {}).items():
        if isinstance(value, str):
            normalized[term] = {'*': value}
        elif isinstance(value, Mapping):
            normalized[term] = {str(locale): str(text) for locale, text in value.items()}
    return normalized


def load_glossary_file(file_path: str) -> Dict[str, Any]:
    """
    Load a glossary from a JSON or CSV file.

    CSV files have a ``term`` column followed by one column per locale
    (``*`` for every locale).
    """
    with open(file_path, 'r', encoding='utf-8', newline='') as stream:
        if file_path.endswith('.json'):
            data = json.load(stream)
            return data if isinstance(data, dict) else {}
        if file_path.endswith('.csv'):
            glossary: Dict[str, Any] = {}
            for row in csv.DictReader(stream):
                term = (row.pop('term', None) or '').strip()
                if term:
                    glossary[term] = {locale: text for locale, text in row.items() if locale and text}
            return glossary
    raise ValueError(f"Unsupported glossary file format: {file_path}")


def term_exists(text: str, term: str, case_sensitive: bool = False, whole_words: bool = True) -> bool:
    if whole_words:
        flags = 0 if case_sensitive else re.IGNORECASE
        return re.search(r'\b' + re.escape(term) + r'\b', text, flags) is not None
    if case_sensitive:
        return term in text
    return term.lower() in text.lower()


class GlossaryPlugin(ProviderPlugin):
    """
    Builds the ordered rule list each locale's prompt receives.

    Style rules come first, followed by one line per glossary term that
    occurs in the texts being translated. A term whose translation equals
    the term itself, or that is listed under ``preserve_untranslated``, is
    rendered as a keep-as-is rule.
    """
    name = 'glossary'
    priority = 80
    default_config: Mapping[str, Any] = {
        'glossary': {},
        'file': None,
        'style_rules': {},
        'domains': {},
        'options': {
            'case_sensitive': False,
            'match_whole_words': True,
            'preserve_untranslated': [],
        },
    }

    def provides(self) -> List[str]:
        return ['glossary.application']

    def when(self) -> List[str]:
        return [PipelineStage.PREPARATION]

    def _glossary(self, context: TranslationContext) -> Dict[str, Dict[str, str]]:
        glossary = normalize_glossary(self.settings.for_context(context, 'glossary', {}))
        file_path = self.settings.for_context(context, 'file')
        if file_path:
            if os.path.exists(file_path):
                glossary.update(normalize_glossary(load_glossary_file(file_path)))
            else:
                self.settings.warning("Glossary file %s not found", file_path)
        domain = context.metadata.get('domain')
        if domain:
            glossary.update(normalize_glossary(self.settings.for_context(context, f'domains.{domain}', {})))
        glossary.update(normalize_glossary(context.request.get_option('glossary') or {}))
        return glossary

    def _style_rules(self, context: TranslationContext, locale: str) -> List[str]:
        configured = self.settings.for_context(context, 'style_rules', {}) or {}
        requested = context.request.get_option('style_rules') or {}
        rules = list(configured.get(locale, []))
        rules.extend(requested.get(locale, []))
        rules.extend(requested.get('*', []))
        return rules

    def rules_for(self, context: TranslationContext, locale: str,
                  glossary: Optional[Dict[str, Dict[str, str]]] = None) -> List[str]:
        """Rule lines for ``locale``, limited to terms that occur in the working texts."""
        if glossary is None:
            glossary = self._glossary(context)
        options = self.settings.for_context(context, 'options', {}) or {}
        case_sensitive = options.get('case_sensitive', False)
        whole_words = options.get('match_whole_words', True)
        preserve = list(dict.fromkeys(options.get('preserve_untranslated', [])))

        rules = self._style_rules(context, locale)
        texts = [entry.text for entry in context.texts.values()]
        for term in preserve:
            if any(term_exists(text, term, case_sensitive, whole_words) for text in texts):
                rules.append(f"Keep '{term}' untranslated.")
        for term, translations in glossary.items():
            if term in preserve or not any(term_exists(text, term, case_sensitive, whole_words) for text in texts):
                continue
            translation = translations.get(locale, translations.get('*'))
            if translation is None:
                continue
            if translation == term:
                rules.append(f"Keep '{term}' untranslated.")
            else:
                rules.append(f"Translate '{term}' as '{translation}'.")
        return rules

    async def execute(self, context: TranslationContext, locale: Optional[str] = None, **kwargs) -> Any:
        glossary = self._glossary(context)
        if locale is not None:
            return self.rules_for(context, locale, glossary)

        rules = {target: self.rules_for(context, target, glossary) for target in context.request.target_locales}
        context.set_plugin_data(self.name, 'rules', rules)
        applied = sum(len(locale_rules) for locale_rules in rules.values())
        self.settings.debug("Prepared %d rule line(s) from %d glossary term(s)", applied, len(glossary))
        return rules
