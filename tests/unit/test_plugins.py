"""Unit tests for the preparation, validation and output plugins."""
import asyncio
import json
import os

import pytest

from ai_translator.catalog import PropertiesCatalog
from ai_translator.models import TranslationContext, TranslationRequest
from ai_translator.plugins.diff_tracking import DiffTrackingPlugin, text_checksum
from ai_translator.plugins.glossary import GlossaryPlugin, load_glossary_file, normalize_glossary, term_exists
from ai_translator.plugins.output_writer import OutputWriterPlugin
from ai_translator.plugins.token_chunking import TokenChunkingPlugin, split_into_chunks
from ai_translator.plugins.validation import ValidationPlugin


def new_context(texts, locales=('de',), **options):
    return TranslationContext(TranslationRequest(texts=texts, source_locale='en', target_locales=list(locales),
                                                 options=options))


def run_middleware(plugin, context, then=None):
    """Run ``plugin`` with a next handler that records the call and optionally does some work."""
    calls = []

    async def next_handler(ctx):
        calls.append(ctx)
        if then is not None:
            then(ctx)

    asyncio.run(plugin(context, next_handler))
    return calls


class TestTokenChunking:

    def test_split_keeps_order_and_limit(self):
        texts = {'a': 'one two', 'b': 'three four five', 'c': 'six'}
        # prompt lines count 4, 5 and 3 words
        assert split_into_chunks(texts, 10) == [['a', 'b'], ['c']]
        assert split_into_chunks(texts, 100) == [['a', 'b', 'c']]

    def test_oversized_text_gets_its_own_chunk(self):
        texts = {'a': 'short', 'b': ' '.join(['word'] * 50), 'c': 'short'}
        assert split_into_chunks(texts, 10) == [['a'], ['b'], ['c']]

    def test_plugin_stores_chunks_and_calls_next(self):
        plugin = TokenChunkingPlugin({'max_tokens_per_chunk': 10, 'buffer_percentage': 1.0})
        context = new_context({'a': 'one two', 'b': 'three four five', 'c': 'six'})
        calls = run_middleware(plugin, context)

        assert calls == [context]
        assert context.get_plugin_data('token_chunking', 'chunks') == [['a', 'b'], ['c']]
        assert context.get_plugin_data('token_chunking', 'stats') == {'chunk_count': 2, 'key_count': 3,
                                                                      'token_limit': 10}

    def test_skip_option(self):
        plugin = TokenChunkingPlugin()
        context = new_context({'a': 'one'}, skip_token_chunking=True)
        calls = run_middleware(plugin, context)
        assert calls == [context]
        assert context.get_plugin_data('token_chunking', 'chunks') is None


class TestGlossary:

    CONFIG = {
        'glossary': {'Bisq': 'Bisq', 'wallet': {'ko': '지갑'}, 'Lightning': 'Lightning'},
        'style_rules': {'ko': ['Use polite speech.']},
    }

    def test_rules_per_locale(self):
        plugin = GlossaryPlugin(self.CONFIG)
        context = new_context({'a': 'Open your wallet', 'b': 'Welcome to Bisq'}, locales=('ko', 'de'))
        rules = asyncio.run(plugin.execute(context))

        assert rules['ko'] == ['Use polite speech.', "Keep 'Bisq' untranslated.", "Translate 'wallet' as '지갑'."]
        assert rules['de'] == ["Keep 'Bisq' untranslated."]
        assert context.get_plugin_data('glossary', 'rules') == rules

    def test_single_locale_returns_list(self):
        plugin = GlossaryPlugin(self.CONFIG)
        context = new_context({'a': 'Open your wallet'}, locales=('ko',))
        assert asyncio.run(plugin.execute(context, locale='ko')) == [
            'Use polite speech.', "Translate 'wallet' as '지갑'."]
        assert context.get_plugin_data('glossary', 'rules') is None

    def test_request_options_extend_configuration(self):
        plugin = GlossaryPlugin(self.CONFIG)
        context = new_context(
            {'a': 'Open your wallet'},
            locales=('ko',),
            glossary={'wallet': {'ko': '월렛'}},
            style_rules={'*': ['Keep it short.']},
        )
        assert plugin.rules_for(context, 'ko') == [
            'Use polite speech.', 'Keep it short.', "Translate 'wallet' as '월렛'."]

    def test_preserve_untranslated(self):
        plugin = GlossaryPlugin({'options': {'preserve_untranslated': ['BTC']}})
        context = new_context({'a': 'Send BTC now'})
        assert plugin.rules_for(context, 'de') == ["Keep 'BTC' untranslated."]

    def test_preserved_terms_keep_their_configured_order(self):
        terms = ['Tor', 'BTC', 'Lightning', 'I2P', 'BTC', 'Bisq']
        plugin = GlossaryPlugin({'options': {'preserve_untranslated': terms}})
        context = new_context({'a': 'Bisq runs over Tor and I2P', 'b': 'Pay BTC via Lightning'})
        assert plugin.rules_for(context, 'de') == [
            "Keep 'Tor' untranslated.", "Keep 'BTC' untranslated.", "Keep 'Lightning' untranslated.",
            "Keep 'I2P' untranslated.", "Keep 'Bisq' untranslated."]

    def test_term_matching(self):
        assert term_exists('Open your wallet', 'Wallet')
        assert not term_exists('Open your wallet', 'Wallet', case_sensitive=True)
        assert not term_exists('Two wallets', 'wallet')
        assert term_exists('Two wallets', 'wallet', whole_words=False)

    def test_normalize(self):
        assert normalize_glossary({'Bisq': 'Bisq', 'fee': {'de': 'Gebühr'}}) == {
            'Bisq': {'*': 'Bisq'}, 'fee': {'de': 'Gebühr'}}

    def test_load_csv_file(self, tmp_path):
        path = tmp_path / 'glossary.csv'
        path.write_text("term,ko,*\nwallet,지갑,\nBisq,,Bisq\n", encoding='utf-8')
        assert load_glossary_file(str(path)) == {'wallet': {'ko': '지갑'}, 'Bisq': {'*': 'Bisq'}}

    def test_file_entries_are_merged(self, tmp_path):
        path = tmp_path / 'glossary.json'
        path.write_text(json.dumps({'offer': {'de': 'Angebot'}}), encoding='utf-8')
        plugin = GlossaryPlugin({'file': str(path)})
        context = new_context({'a': 'Take the offer'})
        assert plugin.rules_for(context, 'de') == ["Translate 'offer' as 'Angebot'."]


class TestDiffTracking:

    @pytest.fixture
    def catalog(self, tmp_path):
        path = tmp_path / 'messages_de.properties'
        path.write_text("greeting=Hallo\nbye=\n", encoding='utf-8')
        return PropertiesCatalog(str(path))

    def test_translated_catalog_keys_are_reused(self, catalog):
        plugin = DiffTrackingPlugin()
        context = new_context({'greeting': 'Hello', 'bye': 'Bye', 'thanks': 'Thanks'}, catalogs={'de': catalog})
        calls = run_middleware(plugin, context)

        assert calls == [context]
        assert context.translations['de'] == {'greeting': 'Hallo'}
        assert context.cached['de'] == {'greeting'}
        assert list(context.texts) == ['bye', 'thanks']
        assert context.pending_keys('de') == ['bye', 'thanks']
        assert context.get_plugin_data('diff_tracking', 'stats')['de'] == {'reused': 1, 'changed': 0, 'pending': 2}

    def test_key_stays_in_working_set_while_any_locale_needs_it(self, catalog):
        plugin = DiffTrackingPlugin()
        context = new_context({'greeting': 'Hello'}, locales=('de', 'fr'), catalogs={'de': catalog})
        run_middleware(plugin, context)
        assert list(context.texts) == ['greeting']
        assert context.pending_keys('fr') == ['greeting']
        assert context.pending_keys('de') == []

    def test_catalog_pattern(self, tmp_path, catalog):
        plugin = DiffTrackingPlugin({'catalog_pattern': str(tmp_path / 'messages_{locale}.properties')})
        context = new_context({'greeting': 'Hello'})
        run_middleware(plugin, context)
        assert context.translations['de'] == {'greeting': 'Hallo'}

    def test_state_roundtrip_and_changed_sources(self, tmp_path):
        state_dir = str(tmp_path / 'state')
        plugin = DiffTrackingPlugin({'state_directory': state_dir, 'use_cache': True})

        def translate_all(ctx):
            for key in ctx.pending_keys('de'):
                ctx.add_translation('de', key, ctx.texts[key].text.upper())

        first = new_context({'greeting': 'Hello', 'bye': 'Bye'})
        run_middleware(plugin, first, then=translate_all)
        first.complete()
        plugin.terminate(first, first.snapshot())

        state_path = os.path.join(state_dir, 'default_en_de.json')
        with open(state_path, encoding='utf-8') as stream:
            state = json.load(stream)
        assert state['translations'] == {'greeting': 'HELLO', 'bye': 'BYE'}
        assert state['texts']['greeting'] == text_checksum('Hello')

        second = new_context({'greeting': 'Hello  ', 'bye': 'Goodbye'})
        run_middleware(plugin, second)
        assert second.translations['de'] == {'greeting': 'HELLO'}
        assert second.pending_keys('de') == ['bye']
        assert second.get_plugin_data('diff_tracking', 'stats')['de']['changed'] == 1

    def test_state_is_not_saved_for_failed_runs(self, tmp_path):
        plugin = DiffTrackingPlugin({'state_directory': str(tmp_path)})
        context = new_context({'greeting': 'Hello'})
        run_middleware(plugin, context)
        context.state = 'failed'
        plugin.terminate(context, context.snapshot())
        assert os.listdir(tmp_path) == []

    def test_cache_is_ignored_unless_enabled(self, tmp_path):
        state_path = tmp_path / 'default_en_de.json'
        state_path.write_text(json.dumps({
            'texts': {'greeting': text_checksum('Hello')},
            'translations': {'greeting': 'Hallo'},
        }), encoding='utf-8')
        context = new_context({'greeting': 'Hello'})
        run_middleware(DiffTrackingPlugin({'state_directory': str(tmp_path)}), context)
        assert context.pending_keys('de') == ['greeting']


class TestValidation:

    def test_issues_become_warnings(self):
        plugin = ValidationPlugin()
        context = new_context({'greeting': 'Hello {name}, welcome back!', 'bold': 'Make it <b>bold</b>'})

        def translate(ctx):
            ctx.add_translation('de', 'greeting', 'Hallo, willkommen zurück!')
            ctx.add_translation('de', 'bold', 'Mach es fett')

        run_middleware(plugin, context, then=translate)

        issues = context.get_plugin_data('validation', 'issues')['de']
        assert issues['greeting'] == ['missing placeholder {name}']
        assert issues['bold'] == ['HTML tags differ from the source']
        assert "Validation for 'greeting' (de): missing placeholder {name}" in context.warnings

    def test_cached_values_are_not_checked(self):
        plugin = ValidationPlugin()
        context = new_context({'greeting': 'Hello {name}'})
        run_middleware(plugin, context, then=lambda ctx: ctx.add_translation('de', 'greeting', 'Hallo', cached=True))
        assert context.warnings == []

    def test_checks_can_be_switched_off(self):
        plugin = ValidationPlugin({'checks': {'placeholders': False}})
        context = new_context({'greeting': 'Hello {name}'})
        run_middleware(plugin, context, then=lambda ctx: ctx.add_translation('de', 'greeting', 'Hallo Freund'))
        assert context.warnings == []

    def test_length_ratio_and_encoding(self):
        plugin = ValidationPlugin()
        context = new_context({'save': 'Save all of your changes'})
        run_middleware(plugin, context, then=lambda ctx: ctx.add_translation('de', 'save', 'SpeichernÃ¤'))
        issues = context.get_plugin_data('validation', 'issues')['de']['save']
        assert issues[0].startswith('suspicious length ratio')
        assert issues[-1] == 'possible encoding corruption'


class TestOutputWriter:

    def test_writes_fresh_translations_only(self, tmp_path):
        path = tmp_path / 'messages_de.properties'
        path.write_text("greeting=Hallo\n", encoding='utf-8')
        catalog = PropertiesCatalog(str(path))
        context = new_context({'greeting': 'Hello', 'bye': 'Bye'}, catalogs={'de': catalog})

        def translate(ctx):
            ctx.add_translation('de', 'greeting', 'Hallo', cached=True)
            ctx.add_translation('de', 'bye', 'Tschüss')

        run_middleware(OutputWriterPlugin(), context, then=translate)

        assert path.read_text(encoding='utf-8') == "greeting=Hallo\nbye=Tschüss\n"
        assert context.get_plugin_data('output_writer', 'written') == {'de': 1}

    def test_dry_run_writes_nothing(self, tmp_path):
        pattern = str(tmp_path / 'messages_{locale}.properties')
        context = new_context({'bye': 'Bye'}, dry_run=True)
        run_middleware(OutputWriterPlugin({'catalog_pattern': pattern}), context,
                       then=lambda ctx: ctx.add_translation('de', 'bye', 'Tschüss'))

        assert not (tmp_path / 'messages_de.properties').exists()
        assert context.get_plugin_data('output_writer', 'written') == {}

    def test_uses_catalogs_opened_by_diff_tracking(self, tmp_path):
        catalog = PropertiesCatalog(str(tmp_path / 'out.properties'))
        context = new_context({'bye': 'Bye'})
        context.set_plugin_data('diff_tracking', 'catalogs', {'de': catalog})
        run_middleware(OutputWriterPlugin(), context, then=lambda ctx: ctx.add_translation('de', 'bye', 'Tschüss'))
        assert (tmp_path / 'out.properties').read_text(encoding='utf-8') == "bye=Tschüss\n"
