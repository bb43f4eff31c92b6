import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple

from ai_translator.exceptions import VerificationFailed
from ai_translator.models import LocalizedItem

# {0}, {name}, {{name}}, :name, %s, %1$s, %d
PLACEHOLDER_PATTERNS = (
    re.compile(r'\{\{\s*([^{}]+?)\s*\}\}'),
    re.compile(r'(?<!\{)\{([^{}]+)\}(?!\})'),
    re.compile(r'(?<![\w:]):([A-Za-z_][A-Za-z0-9_]*)'),
    re.compile(r'%(\d+\$)?[-+0#]*\d*(?:\.\d+)?[sdif]'),
)
HTML_TAG_PATTERN = re.compile(r'</?([A-Za-z][A-Za-z0-9]*)\b[^>]*>')
MOJIBAKE_PATTERN = re.compile(r'Ã[\x80-\xff]')


def check_key_coverage(requested: Iterable[str], returned: Iterable[str]) -> Tuple[Set[str], Set[str]]:
    """Return ``(missing, unexpected)``: requested keys absent from a response, and response keys nobody asked for."""
    requested, returned = set(requested), set(returned)
    return requested - returned, returned - requested


def extract_placeholders(text: str) -> Counter:
    found: Counter = Counter()
    for pattern in PLACEHOLDER_PATTERNS:
        for match in pattern.finditer(text):
            found[match.group(0)] += 1
    return found


def check_placeholder_parity(base_string: str, target_string: str) -> bool:
    """
    Checks if the placeholders are identical between a source and a translated string.
    Reordering is allowed, dropping or inventing a placeholder is not.

    Args:
        base_string: The source string.
        target_string: The translated string.

    Returns:
        True if both strings carry the same multiset of placeholders, False otherwise.
    """
    return extract_placeholders(base_string) == extract_placeholders(target_string)


def find_placeholder_issues(base_string: str, target_string: str) -> List[str]:
    base = extract_placeholders(base_string)
    target = extract_placeholders(target_string)
    issues = []
    for placeholder in sorted((base - target).keys()):
        issues.append(f"missing placeholder {placeholder}")
    for placeholder in sorted((target - base).keys()):
        issues.append(f"unexpected placeholder {placeholder}")
    return issues


def check_html_tags(base_string: str, target_string: str) -> bool:
    base_tags = Counter(tag.lower() for tag in HTML_TAG_PATTERN.findall(base_string))
    target_tags = Counter(tag.lower() for tag in HTML_TAG_PATTERN.findall(target_string))
    return base_tags == target_tags


def check_length_ratio(base_string: str, target_string: str, min_ratio: float = 0.5,
                       max_ratio: float = 2.0, min_length: int = 10) -> Optional[float]:
    """Return the length ratio when it falls outside the bounds, None otherwise."""
    if len(base_string) < min_length or not target_string:
        return None
    ratio = len(target_string) / len(base_string)
    if ratio < min_ratio or ratio > max_ratio:
        return ratio
    return None


def has_mojibake(text: str) -> bool:
    # 'Ã' followed by a byte in 0x80-0xFF is UTF-8 decoded as latin-1/cp1252.
    return bool(MOJIBAKE_PATTERN.search(text)) or '\uFFFD' in text


@dataclass
class VerificationResult:
    items: List[LocalizedItem]
    missing_keys: Set[str] = field(default_factory=set)
    extra_keys: Set[str] = field(default_factory=set)

    def warnings(self, label: str = '') -> List[str]:
        prefix = f"[{label}] " if label else ''
        messages = []
        if self.missing_keys:
            messages.append(f"{prefix}Missing keys in response: {', '.join(sorted(self.missing_keys))}")
        if self.extra_keys:
            messages.append(f"{prefix}Unexpected keys in response: {', '.join(sorted(self.extra_keys))}")
        return messages


def verify_items(items: Iterable[LocalizedItem], source_keys: Set[str]) -> VerificationResult:
    """
    Checks a decoded response against the requested keys.

    Items without a key or without a translated value are ignored, as are
    keys that were never requested. Missing keys are reported, not fatal.

    Raises:
        VerificationFailed: If not a single requested key came back translated.
    """
    usable = [item for item in items if item.key and item.translated]
    if not usable:
        raise VerificationFailed("Response contained no item with both a key and a translation")

    missing_keys, extra_keys = check_key_coverage(source_keys, {item.key for item in usable})
    kept = [item for item in usable if item.key in source_keys]
    if not kept:
        raise VerificationFailed(
            f"None of the {len(usable)} returned item(s) matched a requested key",
            details={'extra_keys': sorted(extra_keys)},
        )
    return VerificationResult(items=kept, missing_keys=missing_keys, extra_keys=extra_keys)
