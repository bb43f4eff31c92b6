"""
PII masking.

Personal data in the source strings (e-mail addresses, phone numbers, card
numbers, US social security numbers, IP addresses and optionally URLs) is
replaced with opaque tokens before any text reaches a backend. Every value
recorded afterwards has the tokens swapped back, and the working texts are
restored once the translation stage is done.
"""
import re
from dataclasses import replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from ai_translator.models import PipelineStage, SourceEntry, TranslationContext
from ai_translator.plugins.base import MiddlewarePlugin, NextHandler

if TYPE_CHECKING:
    from ai_translator.pipeline import TranslationPipeline

SSN_PATTERN = re.compile(r'\b\d{3}-\d{2}-\d{4}\b')
CARD_PATTERN = re.compile(r'\b(?:\d[ -]*?){13,19}\b')
IPV4_PATTERN = re.compile(r'\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b')
IPV6_PATTERN = re.compile(r'\b(?:[0-9A-Fa-f]{1,4}:){7}[0-9A-Fa-f]{1,4}\b')
EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
PHONE_PATTERNS = (
    re.compile(r'\(\d{3}\)\s*\d{3}-\d{4}'),
    re.compile(r'\+\d{1,3}[-.\s]?\d{1,4}[-.\s]?\d{1,4}[-.\s]?\d{1,9}'),
    re.compile(r'\b\d{3}[-.\s]\d{3}[-.\s]\d{4}\b'),
)
URL_PATTERN = re.compile(r'\bhttps?://[^\s<>"\']+')


def luhn_valid(number: str) -> bool:
    digits = [int(char) for char in number if char.isdigit()]
    if not 13 <= len(digits) <= 19:
        return False
    total = 0
    for index, digit in enumerate(reversed(digits)):
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


class PIIMasker:
    """
    Replaces personal data with ``{prefix}{TYPE}_{n}{suffix}`` tokens.

    The same value always gets the same token, so one masker can be shared by
    every text of a run. ``unmask`` reverses the replacement.
    """

    def __init__(self, config: Mapping[str, Any]):
        self.prefix = config.get('mask_token_prefix', '__PII_')
        self.suffix = config.get('mask_token_suffix', '__')
        self.detectors: List[Tuple[str, re.Pattern, bool]] = []
        for pattern, label in (config.get('mask_custom_patterns') or {}).items():
            self.detectors.append((str(label).upper(), re.compile(pattern), False))
        if config.get('mask_ssn', True):
            self.detectors.append(('SSN', SSN_PATTERN, False))
        if config.get('mask_credit_cards', True):
            self.detectors.append(('CREDIT_CARD', CARD_PATTERN, True))
        if config.get('mask_ips', True):
            self.detectors.extend([('IP', IPV4_PATTERN, False), ('IP', IPV6_PATTERN, False)])
        if config.get('mask_emails', True):
            self.detectors.append(('EMAIL', EMAIL_PATTERN, False))
        if config.get('mask_phones', True):
            self.detectors.extend(('PHONE', pattern, False) for pattern in PHONE_PATTERNS)
        if config.get('mask_urls', False):
            self.detectors.append(('URL', URL_PATTERN, False))
        self.tokens: Dict[str, str] = {}
        self._by_value: Dict[str, str] = {}
        self._counters: Dict[str, int] = {}
        self.mask_types: Dict[str, int] = {}
        self.total_masks = 0

    def _token_for(self, kind: str, value: str) -> str:
        token = self._by_value.get(value)
        if token is None:
            self._counters[kind] = self._counters.get(kind, 0) + 1
            token = f"{self.prefix}{kind}_{self._counters[kind]}{self.suffix}"
            self._by_value[value] = token
            self.tokens[token] = value
        self.total_masks += 1
        self.mask_types[kind] = self.mask_types.get(kind, 0) + 1
        return token

    def mask(self, text: str) -> str:
        for kind, pattern, luhn in self.detectors:
            def substitute(match, kind=kind, luhn=luhn):
                value = match.group(0)
                if luhn and not luhn_valid(value):
                    return value
                return self._token_for(kind, value)
            text = pattern.sub(substitute, text)
        return text

    def mask_entry(self, entry: SourceEntry) -> SourceEntry:
        masked = self.mask(entry.text)
        references = {locale: self.mask(text) for locale, text in entry.references.items()}
        if masked == entry.text and references == dict(entry.references):
            return entry
        return replace(entry, text=masked, references=MappingProxyType(references))

    def unmask(self, text: str) -> str:
        for token in sorted(self.tokens, key=len, reverse=True):
            if token in text:
                text = text.replace(token, self.tokens[token])
        return text

    def stats(self) -> Dict[str, Any]:
        return {'total_masks': self.total_masks, 'mask_types': dict(self.mask_types),
                'unique_values': len(self.tokens)}


class PIIMaskingPlugin(MiddlewarePlugin):
    """Masks personal data in the working texts and puts it back into every translation."""
    name = 'pii_masking'
    priority = 200
    stage = PipelineStage.PRE_PROCESS
    default_config: Mapping[str, Any] = {
        'mask_by_default': False,
        'mask_emails': True,
        'mask_phones': True,
        'mask_credit_cards': True,
        'mask_ssn': True,
        'mask_ips': True,
        'mask_urls': False,
        'mask_custom_patterns': {},
        'mask_token_prefix': '__PII_',
        'mask_token_suffix': '__',
    }

    def should_skip(self, context: TranslationContext) -> bool:
        """Masking is opt-in: the ``mask_pii`` request option or ``mask_by_default`` turns it on."""
        if super().should_skip(context):
            return True
        requested = context.request.get_option('mask_pii')
        if requested is None:
            requested = self.settings.for_context(context, 'mask_by_default', False)
        return not requested

    async def handle(self, context: TranslationContext, next_handler: NextHandler) -> None:
        masker = PIIMasker(self.settings.resolve(context.plugin_config(self.name)))
        originals = dict(context.texts)
        for key, entry in originals.items():
            context.texts[key] = masker.mask_entry(entry)

        if masker.tokens:
            context.add_value_filter(lambda _locale, value: masker.unmask(value))
            context.set_plugin_data(self.name, 'originals', originals)
            self.settings.info("Masked %d value(s) of personal data in %d text(s)", masker.total_masks,
                               sum(1 for key in originals if context.texts[key] is not originals[key]))
        context.set_plugin_data(self.name, 'masker', masker)
        context.set_plugin_data(self.name, 'stats', masker.stats())
        await next_handler(context)

    async def restore(self, context: TranslationContext, next_handler: NextHandler) -> None:
        """Wraps the translation stage and puts the original working texts back afterwards."""
        try:
            await next_handler(context)
        finally:
            originals: Optional[Dict[str, SourceEntry]] = context.get_plugin_data(self.name, 'originals')
            if originals:
                for key in context.texts:
                    context.texts[key] = originals[key]
                self.settings.debug("Restored %d working text(s)", len(context.texts))

    def boot(self, pipeline: "TranslationPipeline") -> None:
        super().boot(pipeline)
        pipeline.register_middleware(PipelineStage.TRANSLATION, self.restore, self.priority)
