from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from ai_translator.plugins.base import ObserverPlugin

if TYPE_CHECKING:
    from ai_translator.pipeline import PipelineEvent


class ProgressObserver(ObserverPlugin):
    """Logs the start, each completed stage and a summary of the run."""
    name = 'progress'
    priority = -50
    default_config: Mapping[str, Any] = {'log_stages': True}

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        super().__init__(config)
        self.history: List[Dict[str, Any]] = []

    def subscribe(self) -> Dict[str, str]:
        return {
            'translation.started': 'on_started',
            'stage.*.completed': 'on_stage_completed',
            'translation.completed': 'on_completed',
            'translation.failed': 'on_failed',
        }

    def on_started(self, event: "PipelineEvent") -> None:
        snapshot = event.snapshot
        self.settings.info("Translating %d key(s) from %s to %s",
                           snapshot['key_count'], snapshot['source_locale'], ', '.join(snapshot['target_locales']))

    def on_stage_completed(self, event: "PipelineEvent") -> None:
        done = sum(len(values) for values in event.snapshot['translations'].values())
        self.history.append({'stage': event.stage, 'translated': done})
        if self.settings.get('log_stages', True):
            self.settings.debug("Stage '%s' completed (%d translation(s) so far)", event.stage, done)

    def on_completed(self, event: "PipelineEvent") -> None:
        snapshot = event.snapshot
        usage = snapshot['token_usage']
        for locale, values in snapshot['translations'].items():
            self.settings.info("%s: %d/%d key(s) translated", locale, len(values), snapshot['key_count'])
        self.settings.info("Finished in %.2fs with %d warning(s); tokens: %d input, %d output",
                           snapshot['duration'], len(snapshot['warnings']), usage.input_tokens, usage.output_tokens)

    def on_failed(self, event: "PipelineEvent") -> None:
        self.settings.error("Translation failed: %s", event.data.get('error'))
