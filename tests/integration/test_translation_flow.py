"""End-to-end runs of the default pipeline against scripted backends."""
import tempfile
import unittest

from ai_translator import TranslationBuilder, TranslationCallbacks, TranslationFailed, TranslationRequest, translate
from ai_translator.api import build_default_pipeline
from ai_translator.app_config import AppConfig
from ai_translator.models import ProviderConfig
from tests.backend_stubs import BackendRouter, ScriptedBackend, prompt_keys, xml_response


def app_config(tmp_dir='/tmp/project', **overrides):
    settings = {
        'project_root': tmp_dir,
        'source_locale': 'en',
        'target_locales': ['ko'],
        'providers': [ProviderConfig('openai', 'gpt-4o', label='primary')],
        'retry_attempts': 2,
    }
    settings.update(overrides)
    return AppConfig(**settings)


class TestTranslationFlow(unittest.IsolatedAsyncioTestCase):

    async def test_single_key_single_locale(self):
        backend = ScriptedBackend([xml_response({'greeting': '안녕하세요'})])
        usages = []
        pipeline = build_default_pipeline(app_config(), BackendRouter({}, default=backend))
        request = TranslationRequest(texts={'greeting': 'Hello'}, source_locale='en', target_locales=['ko'])

        result = await translate(request, pipeline=pipeline,
                                 callbacks=TranslationCallbacks(on_token_usage=usages.append))

        self.assertEqual(result.translations, {'ko': {'greeting': '안녕하세요'}})
        self.assertEqual(result.warnings, [])
        self.assertEqual([usage.final for usage in usages].count(True), 1)
        self.assertEqual(result.total_tokens, backend.usage.total_tokens)
        self.assertTrue(result.token_usage.final)

    async def test_only_untranslated_keys_are_sent_and_written(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            catalog_path = f"{tmp_dir}/messages_de.properties"
            with open(catalog_path, 'w', encoding='utf-8') as stream:
                stream.write("# German\ngreeting=Hallo\n")
            backend = ScriptedBackend(respond=lambda request: xml_response(
                {key: f"[de] {key}" for key in prompt_keys(request)}))
            config = app_config(
                tmp_dir,
                target_locales=['de'],
                plugins={'diff_tracking': {'catalog_pattern': f"{tmp_dir}/messages_{{locale}}.properties"}},
            )
            builder = TranslationBuilder(config=config, backend_factory=BackendRouter({}, default=backend))

            result = await builder.translate({'greeting': 'Hello', 'bye': 'Bye', 'thanks': 'Thanks'})

            self.assertEqual(backend.calls, 1)
            self.assertEqual(prompt_keys(backend.requests[0]), ['bye', 'thanks'])
            self.assertEqual(result.translations['de'],
                             {'greeting': 'Hallo', 'bye': '[de] bye', 'thanks': '[de] thanks'})
            with open(catalog_path, encoding='utf-8') as stream:
                self.assertEqual(stream.read(), "# German\ngreeting=Hallo\nbye=[de] bye\nthanks=[de] thanks\n")

    async def test_stream_with_key_prefix_and_progress(self):
        backend = ScriptedBackend(respond=lambda request: xml_response(
            {key: key.upper() for key in prompt_keys(request)}), chunk_size=3)
        progress = []
        builder = (TranslationBuilder(config=app_config(), backend_factory=BackendRouter({}, default=backend))
                   .to(['ko', 'ja'])
                   .with_key_prefix('app')
                   .on_progress(progress.append))

        outputs = [output async for output in builder.stream({'greeting': 'Hello', 'bye': 'Bye'})]

        self.assertEqual(progress, outputs)
        self.assertEqual({(output.locale, output.key, output.value) for output in outputs}, {
            ('ko', 'greeting', 'APP.GREETING'), ('ko', 'bye', 'APP.BYE'),
            ('ja', 'greeting', 'APP.GREETING'), ('ja', 'bye', 'APP.BYE'),
        })
        self.assertTrue(all(prompt_keys(request) == ['app.greeting', 'app.bye'] for request in backend.requests))

    async def test_dry_run_echoes_sources(self):
        builder = TranslationBuilder(config=app_config(dry_run=True, target_locales=['de', 'ko']))
        result = await builder.translate({'greeting': 'Hello {name}', 'bye': 'Bye'})
        self.assertEqual(result.translations, {
            'de': {'greeting': 'Hello {name}', 'bye': 'Bye'},
            'ko': {'greeting': 'Hello {name}', 'bye': 'Bye'},
        })
        self.assertEqual(result.warnings, [])

    async def test_garbage_everywhere_fails_the_request(self):
        backend = ScriptedBackend(["I'm sorry, but I can't help with that."])
        pipeline = build_default_pipeline(app_config(), BackendRouter({}, default=backend))
        request = TranslationRequest(texts={'greeting': 'Hello'}, source_locale='en', target_locales=['ko'])

        with self.assertRaises(TranslationFailed):
            await translate(request, pipeline=pipeline)
        self.assertEqual(backend.calls, 2)

    async def test_backend_failure_keeps_catalog_values(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            catalog_path = f"{tmp_dir}/messages_de.properties"
            with open(catalog_path, 'w', encoding='utf-8') as stream:
                stream.write("greeting=Hallo\n")
            backend = ScriptedBackend(["no items here"])
            config = app_config(
                tmp_dir,
                target_locales=['de'],
                retry_attempts=1,
                plugins={'diff_tracking': {'catalog_pattern': f"{tmp_dir}/messages_{{locale}}.properties"}},
            )
            builder = TranslationBuilder(config=config, backend_factory=BackendRouter({}, default=backend))

            result = await builder.translate({'greeting': 'Hello', 'bye': 'Bye'})

            self.assertEqual(result.translations, {'de': {'greeting': 'Hallo'}})
            self.assertIn("Key 'bye' was not translated for locale 'de'", result.warnings)
            with open(catalog_path, encoding='utf-8') as stream:
                self.assertEqual(stream.read(), "greeting=Hallo\n")

    async def test_personal_data_never_reaches_the_backend(self):
        backend = ScriptedBackend(respond=lambda request: xml_response(
            {'contact': 'Schreib an __PII_EMAIL_1__'}))
        pipeline = build_default_pipeline(app_config(target_locales=['de']), BackendRouter({}, default=backend))
        request = TranslationRequest(texts={'contact': 'Write to support@bisq.network'}, source_locale='en',
                                     target_locales=['de'], options={'mask_pii': True})
        context = pipeline.create_context(request)

        await pipeline.run(context)

        self.assertNotIn('support@bisq.network', '\n'.join(backend.requests[0].messages))
        self.assertEqual(context.translations, {'de': {'contact': 'Schreib an support@bisq.network'}})
        self.assertEqual(context.texts['contact'].text, 'Write to support@bisq.network')
        self.assertEqual(context.warnings, [])

    async def test_existing_translations_are_shown_to_the_backend(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            with open(f"{tmp_dir}/app.properties", 'w', encoding='utf-8') as stream:
                stream.write("save=Save\ncancel=Cancel\n")
            with open(f"{tmp_dir}/app_de.properties", 'w', encoding='utf-8') as stream:
                stream.write("save=Speichern\n")
            backend = ScriptedBackend([xml_response({'save_as': 'Speichern unter'})])
            builder = (TranslationBuilder(config=app_config(tmp_dir, target_locales=['de']),
                                          backend_factory=BackendRouter({}, default=backend))
                       .with_context_catalogs([{'source': f"{tmp_dir}/app.properties",
                                                'target': f"{tmp_dir}/app_{{locale}}.properties"}]))

            result = await builder.translate({'save_as': 'Save as'})

            self.assertEqual(result.translations, {'de': {'save_as': 'Speichern unter'}})
            self.assertIn('Stay consistent with the existing translation "Save" -> "Speichern".',
                          backend.requests[0].system)

    async def test_consensus_with_judge(self):
        alpha = ScriptedBackend([xml_response({'greeting': '안녕'})])
        beta = ScriptedBackend([xml_response({'greeting': '안녕하세요'})])
        judge = ScriptedBackend(["<think>The second is more polite.</think>2"])
        config = app_config(
            providers=[ProviderConfig('openai', 'gpt-4o', label='alpha'),
                       ProviderConfig('anthropic', 'claude-3-5-sonnet-latest', label='beta')],
            judge=ProviderConfig('openai', 'gpt-5', label='judge'),
        )
        router = BackendRouter({'alpha': alpha, 'beta': beta, 'judge': judge})
        result = await TranslationBuilder(config=config, backend_factory=router).translate({'greeting': 'Hello'})

        self.assertEqual(result.get_translation('greeting'), '안녕하세요')
        self.assertEqual(result.outputs[0].metadata['provider'], 'beta')
        self.assertEqual(result.total_tokens, 3 * alpha.usage.total_tokens)

    async def test_tenant_can_disable_a_plugin(self):
        backend = ScriptedBackend([xml_response({'greeting': 'Hallo'})])
        pipeline = build_default_pipeline(app_config(target_locales=['de']), BackendRouter({}, default=backend))
        pipeline.registry.disable_for_tenant('acme', 'validation')
        request = TranslationRequest(texts={'greeting': 'Hello {name}, nice to see you'}, source_locale='en',
                                     target_locales=['de'], tenant_id='acme')

        result = await translate(request, pipeline=pipeline)
        self.assertEqual(result.warnings, [])

        other = await translate(TranslationRequest(texts={'greeting': 'Hello {name}, nice to see you'},
                                                   source_locale='en', target_locales=['de']), pipeline=pipeline)
        self.assertTrue(any(warning.startswith("Validation for 'greeting'") for warning in other.warnings))


if __name__ == '__main__':
    unittest.main()
