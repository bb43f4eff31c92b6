"""Prompt construction for translation and judge calls."""
from typing import Mapping, Optional, Sequence, Tuple

import tiktoken

from ai_translator.models import SourceEntry


def count_tokens(text: str, model_name: str = 'gpt-4o') -> int:
    """Count the number of tokens in ``text`` for ``model_name``.

    ``tiktoken.encoding_for_model`` may try to download encoding data and
    does not know non-OpenAI models. Unknown models fall back to
    ``cl100k_base``; if no encoding can be loaded at all a whitespace split
    is used.
    """
    try:
        encoding = tiktoken.encoding_for_model(model_name)
    except Exception:
        try:
            encoding = tiktoken.get_encoding("cl100k_base")
        except Exception:
            return len(text.split())

    try:
        return len(encoding.encode(text))
    except Exception:
        return len(text.split())


def language_name(code: str, language_codes: Optional[Mapping[str, str]] = None) -> str:
    """Human readable language name for a locale code, falling back to the code."""
    if language_codes:
        name = language_codes.get(code) or language_codes.get(code.split('_')[0].split('-')[0])
        if name:
            return name
    return code


def format_rules(language: str, rules: Sequence[str]) -> str:
    """Render ``rules`` as the checklist appended to a prompt, or an empty string."""
    if not rules:
        return ''
    return f"Special rules for {language}:\n" + "\n".join(f"- {rule}" for rule in rules)


def build_system_prompt(source_language: str, target_language: str, rules: Sequence[str] = ()) -> str:
    prompt = f"""
You are an expert translator specializing in software localization. Translate every string you are given from {source_language} to {target_language}.

**Instructions**:
- **Do not translate or modify placeholders** such as `:name`, `{{name}}`, `{{{{name}}}}`, `%s` or `%1$s`, and keep HTML tags intact.
- **Preserve formatting**: keep line breaks, `\\n`, `\\t` and surrounding punctuation as in the source.
- **Use the context and references** given for a string to disambiguate it. References are approved translations of the same string in other languages.
- **Translate every key** you are given. Never invent keys and never merge two keys.
- You may think before answering inside a single `<thinking>...</thinking>` block.

**Output format**:
Answer with one `<item>` per key inside a `<translations>` element. Wrap the translated text in CDATA:

<translations>
  <item>
    <key>the.key</key>
    <trx><![CDATA[translated text]]></trx>
    <comment><![CDATA[optional note for reviewers]]></comment>
  </item>
</translations>
"""
    if rules:
        prompt += "\n" + format_rules(target_language, rules) + "\n"
    return prompt


def build_user_prompt(entries: Mapping[str, SourceEntry], target_locale: str,
                      source_language: str, target_language: str) -> str:
    lines = [
        f"Translate the following {len(entries)} string(s) from {source_language} to {target_language}.",
        "",
    ]
    for key, entry in entries.items():
        lines.append(f'  - `{key}`: """{entry.text}"""')
        if entry.context:
            lines.append(f"    Context: {entry.context}")
        for locale, reference in entry.references.items():
            if locale != target_locale and reference:
                lines.append(f'    Reference ({locale}): """{reference}"""')
    lines.append("")
    lines.append("Respond only with the <translations> element described in the instructions.")
    return "\n".join(lines)


def build_judge_prompt(source_text: str, target_language: str, candidates: Sequence[Tuple[str, str]]) -> str:
    """Prompt asking a judge model to pick one of several candidate translations."""
    listing = "\n".join(f"{index}. [{label}]: {text}" for index, (label, text) in enumerate(candidates, start=1))
    return (
        "Evaluate the following translations and select the best one.\n\n"
        f"Original text: {source_text}\n"
        f"Target language: {target_language}\n\n"
        f"Candidates:\n{listing}\n\n"
        "Select the number of the best translation based on accuracy, fluency, and naturalness.\n"
        "Respond with only the number."
    )
