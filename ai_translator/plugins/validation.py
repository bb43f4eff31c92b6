from typing import Any, Dict, List, Mapping

from ai_translator.models import PipelineStage, TranslationContext
from ai_translator.plugins.base import MiddlewarePlugin, NextHandler
from ai_translator.translation_validator import (
    check_html_tags,
    check_length_ratio,
    find_placeholder_issues,
    has_mojibake,
)


class ValidationPlugin(MiddlewarePlugin):
    """
    Heuristic checks on new translations, reported as warnings.

    Runs after the rest of the validation stage so it sees every translation
    recorded up to that point. Values reused from a catalog are not checked.
    """
    name = 'validation'
    priority = -100
    stage = PipelineStage.VALIDATION
    default_config: Mapping[str, Any] = {
        'checks': {
            'placeholders': True,
            'html_tags': True,
            'length_ratio': True,
            'encoding': True,
        },
        'length_ratio': {
            'min': 0.5,
            'max': 2.0,
            'min_length': 10,
        },
    }

    def check(self, context: TranslationContext, source: str, translated: str) -> List[str]:
        checks = self.settings.for_context(context, 'checks', {}) or {}
        issues: List[str] = []
        if checks.get('placeholders', True):
            issues.extend(find_placeholder_issues(source, translated))
        if checks.get('html_tags', True) and not check_html_tags(source, translated):
            issues.append("HTML tags differ from the source")
        if checks.get('length_ratio', True):
            ratio = check_length_ratio(
                source,
                translated,
                min_ratio=float(self.settings.for_context(context, 'length_ratio.min', 0.5)),
                max_ratio=float(self.settings.for_context(context, 'length_ratio.max', 2.0)),
                min_length=int(self.settings.for_context(context, 'length_ratio.min_length', 10)),
            )
            if ratio is not None:
                issues.append(f"suspicious length ratio {ratio:.2f}")
        if checks.get('encoding', True) and has_mojibake(translated):
            issues.append("possible encoding corruption")
        return issues

    async def handle(self, context: TranslationContext, next_handler: NextHandler) -> None:
        await next_handler(context)

        report: Dict[str, Dict[str, List[str]]] = {}
        for locale, values in context.translations.items():
            cached = context.cached.get(locale, set())
            for key, translated in values.items():
                if key in cached:
                    continue
                issues = self.check(context, context.request.texts[key].text, translated)
                if not issues:
                    continue
                report.setdefault(locale, {})[key] = issues
                message = f"Validation for '{key}' ({locale}): {'; '.join(issues)}"
                context.add_warning(message)
                self.settings.warning(message)
        context.set_plugin_data(self.name, 'issues', report)
