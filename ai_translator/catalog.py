"""
Catalog transformers.

A catalog is a target-locale resource file seen as a flat ``key -> string``
map. The diff tracking plugin asks it which keys already carry a
translation, the output writer plugin writes new translations back.
"""
import json
import os
import re
from typing import Any, Dict, List, Optional, Protocol, Tuple


class CatalogTransformer(Protocol):
    path: str

    def flatten(self) -> Dict[str, str]:
        ...

    def is_translated(self, key: str) -> bool:
        ...

    def get_string(self, key: str) -> Optional[str]:
        ...

    def update_string(self, key: str, value: str) -> None:
        ...

    def save(self) -> None:
        ...


def _has_unescaped_trailing_backslash(s: str) -> bool:
    """Check if a string ends with an odd number of backslashes."""
    if not s.endswith('\\'):
        return False
    count = 0
    i = len(s) - 1
    while i >= 0 and s[i] == '\\':
        count += 1
        i -= 1
    return count % 2 == 1


def parse_properties(content: str) -> Tuple[List[Dict], Dict[str, str]]:
    """
    Parse the content of a .properties file.

    Args:
        content (str): The file content.

    Returns:
        Tuple[List[Dict], Dict[str, str]]: The parsed lines and the ``key -> value`` map.
    """
    lines = content.splitlines(keepends=True)
    parsed_lines = []
    values = {}
    i = 0
    while i < len(lines):
        line = lines[i].rstrip('\n').rstrip('\r')
        stripped_line = line.lstrip()

        if not stripped_line or stripped_line.startswith(('#', '!')):
            parsed_lines.append({'type': 'comment_or_blank', 'content': lines[i]})
            i += 1
            continue

        sep_index = -1
        # First unescaped separator
        for j, char in enumerate(line):
            if char in (':', '='):
                backslash_count = 0
                k = j - 1
                while k >= 0 and line[k] == '\\':
                    backslash_count += 1
                    k -= 1
                if backslash_count % 2 == 0:
                    sep_index = j
                    break

        if sep_index == -1:
            key = line.strip().replace(r'\=', '=').replace(r'\:', ':').replace('\\\\', '\\')
            values[key] = ''
            parsed_lines.append({
                'type': 'entry', 'key': key, 'value': '', 'original_value': '',
                'was_multiline': False, 'separator_group': '=',
            })
            i += 1
            continue

        start_sep_group = sep_index
        while start_sep_group > 0 and line[start_sep_group - 1].isspace():
            start_sep_group -= 1
        end_sep_group = sep_index
        while end_sep_group < len(line) - 1 and line[end_sep_group + 1].isspace():
            end_sep_group += 1

        key = re.sub(r'\\([:=\s])', r'\1', line[:start_sep_group].strip())
        separator_group = line[start_sep_group:end_sep_group + 1]
        value = line[end_sep_group + 1:]
        original_value_lines = [value]
        was_multiline = False

        while _has_unescaped_trailing_backslash(value):
            was_multiline = True
            value = value[:-1]
            i += 1
            if i >= len(lines):
                break
            next_line = lines[i].rstrip('\n').rstrip('\r')
            original_value_lines.append(next_line)
            value += next_line.lstrip()
        i += 1

        values[key] = value
        parsed_lines.append({
            'type': 'entry',
            'key': key,
            'value': value,
            'original_value': ''.join(original_value_lines),
            'was_multiline': was_multiline,
            'separator_group': separator_group,
        })
    return parsed_lines, values


def reassemble_properties(parsed_lines: List[Dict]) -> str:
    """Rebuild the file content, keeping comments, blank lines and separators."""
    lines = []
    for item in parsed_lines:
        if item['type'] != 'entry':
            lines.append(item['content'])
            continue
        value = item['value']
        separator_group = item.get('separator_group', '=')
        if '\\n' in item.get('original_value', ''):
            value = value.replace('\n', '\\n')
        elif '\n' in value:
            value = '\\\n'.join(value.split('\n'))
        lines.append(f"{item['key']}{separator_group}{value}\n")
    return ''.join(lines)


class PropertiesCatalog:
    """
    A Java-style ``.properties`` file.

    A key counts as translated when it has a non-empty value. Keys written
    with :meth:`update_string` that the file did not contain are appended.
    A missing file is treated as an empty catalog and created on save.
    """

    def __init__(self, path: str):
        self.path = path
        self._lines: List[Dict] = []
        self._values: Dict[str, str] = {}
        if os.path.exists(path):
            with open(path, 'r', encoding='utf-8') as stream:
                self._lines, self._values = parse_properties(stream.read())

    def flatten(self) -> Dict[str, str]:
        return dict(self._values)

    def is_translated(self, key: str) -> bool:
        return bool(self._values.get(key, '').strip())

    def get_string(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def update_string(self, key: str, value: str) -> None:
        self._values[key] = value
        for item in self._lines:
            if item['type'] == 'entry' and item['key'] == key:
                item['value'] = value
                return
        self._lines.append({'type': 'entry', 'key': key, 'value': value, 'original_value': value,
                            'was_multiline': False, 'separator_group': '='})

    def save(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as stream:
            stream.write(reassemble_properties(self._lines))


def _flatten_json(data: Dict[str, Any], prefix: str = '') -> Dict[str, str]:
    flat = {}
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(_flatten_json(value, path))
        elif value is not None:
            flat[path] = str(value)
    return flat


class JsonCatalog:
    """A nested JSON catalog addressed with dot-separated keys."""

    def __init__(self, path: str, indent: int = 2):
        self.path = path
        self.indent = indent
        self._data: Dict[str, Any] = {}
        if os.path.exists(path):
            with open(path, 'r', encoding='utf-8') as stream:
                loaded = json.load(stream)
            if not isinstance(loaded, dict):
                raise ValueError(f"JSON catalog '{path}' must contain an object at the top level")
            self._data = loaded

    def flatten(self) -> Dict[str, str]:
        return _flatten_json(self._data)

    def is_translated(self, key: str) -> bool:
        return bool((self.get_string(key) or '').strip())

    def get_string(self, key: str) -> Optional[str]:
        node: Any = self._data
        for part in key.split('.'):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return None if isinstance(node, dict) or node is None else str(node)

    def update_string(self, key: str, value: str) -> None:
        parts = key.split('.')
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def save(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as stream:
            json.dump(self._data, stream, ensure_ascii=False, indent=self.indent)
            stream.write('\n')


def open_catalog(path: str) -> CatalogTransformer:
    """Pick a transformer from the file extension."""
    if path.endswith('.json'):
        return JsonCatalog(path)
    if path.endswith('.properties'):
        return PropertiesCatalog(path)
    raise ValueError(f"No catalog transformer for '{path}'")
