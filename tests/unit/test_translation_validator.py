import unittest

from ai_translator.exceptions import VerificationFailed
from ai_translator.models import LocalizedItem
from ai_translator.translation_validator import (
    check_html_tags,
    check_key_coverage,
    check_length_ratio,
    check_placeholder_parity,
    extract_placeholders,
    find_placeholder_issues,
    has_mojibake,
    verify_items,
)


class TestTranslationValidator(unittest.TestCase):
    def test_check_key_coverage(self):
        base_keys = {'key.one', 'key.two', 'key.three'}
        target_keys = {'key.one', 'key.three', 'key.four'}

        missing, extra = check_key_coverage(base_keys, target_keys)

        self.assertEqual(missing, {'key.two'})
        self.assertEqual(extra, {'key.four'})

    def test_check_key_coverage_no_diff(self):
        missing, extra = check_key_coverage({'key.one', 'key.two'}, {'key.one', 'key.two'})

        self.assertEqual(missing, set())
        self.assertEqual(extra, set())

    def test_placeholder_parity_success(self):
        self.assertTrue(check_placeholder_parity("Hello {0}, welcome to {1}.", "Hallo {0}, willkommen bei {1}."))

    def test_placeholder_parity_missing_placeholder(self):
        self.assertFalse(check_placeholder_parity("Hello {0}, welcome to {1}.", "Hallo, willkommen bei {1}."))

    def test_placeholder_parity_reordered_placeholders(self):
        # Reordering is common in translation and allowed.
        self.assertTrue(check_placeholder_parity("First {0}, then {1}.", "Zuerst {1}, dann {0}."))

    def test_placeholder_parity_different_placeholders(self):
        self.assertFalse(check_placeholder_parity("Hello {0}.", "Hallo {name}."))

    def test_placeholder_styles(self):
        found = extract_placeholders("Hi {{user}}, :count items, %s and %1$d at 12:30 on https://bisq.network")
        self.assertEqual(set(found), {'{{user}}', ':count', '%s', '%1$d'})

    def test_find_placeholder_issues(self):
        issues = find_placeholder_issues("Hello :name, you have %d messages", "Hallo :nom, du hast Nachrichten")
        self.assertEqual(issues, ['missing placeholder %d', 'missing placeholder :name',
                                  'unexpected placeholder :nom'])

    def test_html_tags(self):
        self.assertTrue(check_html_tags("<b>Bold</b> text", "<B>Fett</B>er Text"))
        self.assertFalse(check_html_tags("<b>Bold</b> text", "Fetter Text"))

    def test_length_ratio(self):
        self.assertAlmostEqual(check_length_ratio("Hello there friend", "Hi"), 2 / 18)
        self.assertIsNone(check_length_ratio("Hello there friend", "Hallo da, Freund"))
        self.assertIsNone(check_length_ratio("Hi", "Hallo zusammen, ihr alle"))

    def test_mojibake(self):
        self.assertTrue(has_mojibake("SchÃ¶n"))
        self.assertTrue(has_mojibake("Sch�n"))
        self.assertFalse(has_mojibake("Schön"))


class TestVerifyItems(unittest.TestCase):
    def test_keeps_requested_items_and_reports_coverage(self):
        items = [LocalizedItem('a', 'A'), LocalizedItem('z', 'Z'), LocalizedItem('', 'x'), LocalizedItem('b', '')]

        result = verify_items(items, {'a', 'b'})

        self.assertEqual(result.items, [LocalizedItem('a', 'A')])
        self.assertEqual(result.warnings('alpha'), [
            "[alpha] Missing keys in response: b",
            "[alpha] Unexpected keys in response: z",
        ])

    def test_no_usable_item_raises(self):
        with self.assertRaises(VerificationFailed):
            verify_items([LocalizedItem('a', '')], {'a'})

    def test_only_unrequested_keys_raises(self):
        with self.assertRaises(VerificationFailed) as cm:
            verify_items([LocalizedItem('z', 'Z')], {'a'})
        self.assertEqual(cm.exception.details, {'extra_keys': ['z']})


if __name__ == '__main__':
    unittest.main()
