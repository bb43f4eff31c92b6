"""
Incremental decoder for the tagged translation format backends answer with.

A response looks like::

    <thinking>free text</thinking>
    <translations>
      <item>
        <key>greeting</key>
        <trx><![CDATA[안녕하세요]]></trx>
        <comment><![CDATA[optional note]]></comment>
      </item>
    </translations>

Chunks may be cut anywhere, including in the middle of a marker. Items are
emitted the moment their ``</item>`` is consumed. Text inside a CDATA section
or a ``\"\"\"`` triple-quoted span is taken verbatim and never searched for
markers until the span is closed.
"""
import html
import logging
import re
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from ai_translator.models import LocalizedItem

logger = logging.getLogger(__name__)

ITEM_FIELDS = ('key', 'trx', 'comment')
REASONING_TAGS = ('thinking', 'think')
CDATA_OPEN = '<![CDATA['
CDATA_CLOSE = ']]>'
TRIPLE_QUOTE = '"""'
ITEM_CLOSE = '</item>'


class DecoderState(Enum):
    SCANNING = 'scanning'
    IN_REASONING_BLOCK = 'in_reasoning_block'
    IN_ITEM = 'in_item'
    AWAITING_CLOSE = 'awaiting_close'


def _partial_suffix(buffer: str, marker: str) -> int:
    """Length of the longest suffix of ``buffer`` that is a proper prefix of ``marker``, ignoring case."""
    for size in range(min(len(marker) - 1, len(buffer)), 0, -1):
        if buffer[-size:].lower() == marker[:size].lower():
            return size
    return 0


def _starts_with(buffer: str, marker: str) -> bool:
    return buffer[:len(marker)].lower() == marker.lower()


def _is_partial(buffer: str, marker: str) -> bool:
    return len(buffer) < len(marker) and marker.lower().startswith(buffer.lower())


def _tag_name(tag: str) -> str:
    parts = tag.lower().split()
    return parts[0] if parts else ''


class StreamDecoder:
    """
    Turns a stream of text chunks into :class:`LocalizedItem` objects.

    One decoder belongs to one backend stream; it is not safe to share.

    Args:
        on_item: Called once per completed item, in document order.
        on_item_started: Called with the key as soon as an item's key is known.
        on_reasoning_start: Called when a reasoning block opens.
        on_reasoning_delta: Called with reasoning text as it arrives.
        on_reasoning_end: Called with the whole reasoning block when it closes.
    """

    def __init__(self,
                 on_item: Optional[Callable[[LocalizedItem], None]] = None,
                 on_item_started: Optional[Callable[[str], None]] = None,
                 on_reasoning_start: Optional[Callable[[], None]] = None,
                 on_reasoning_delta: Optional[Callable[[str], None]] = None,
                 on_reasoning_end: Optional[Callable[[str], None]] = None):
        self.on_item = on_item
        self.on_item_started = on_item_started
        self.on_reasoning_start = on_reasoning_start
        self.on_reasoning_delta = on_reasoning_delta
        self.on_reasoning_end = on_reasoning_end

        self.state = DecoderState.SCANNING
        self._buffer = ''
        self._raw: List[str] = []
        self._items: List[LocalizedItem] = []
        self._seen: Set[str] = set()

        self._field: Optional[str] = None
        self._quote: Optional[str] = None
        self._segments: Dict[str, List[Tuple[str, bool]]] = {}

        self._reasoning_close = ''
        self._reasoning_close_pattern: Optional[re.Pattern] = None
        self._reasoning_parts: List[str] = []

    @property
    def items(self) -> List[LocalizedItem]:
        return list(self._items)

    @property
    def raw_text(self) -> str:
        return ''.join(self._raw)

    def feed(self, chunk: str) -> List[LocalizedItem]:
        """Consume one chunk and return the items it completed."""
        if not chunk:
            return []
        self._raw.append(chunk)
        self._buffer += chunk
        emitted_before = len(self._items)
        if self.state is DecoderState.AWAITING_CLOSE:
            self.state = DecoderState.IN_ITEM
        while self._step():
            pass
        return self._items[emitted_before:]

    def finish(self, full_text: Optional[str] = None) -> List[LocalizedItem]:
        """
        Close the stream.

        When ``full_text`` is given (e.g. the final, non-streamed response
        body) it is decoded from scratch and only items whose key was not
        emitted yet are emitted. An item still open at this point is
        truncated and dropped.

        Returns:
            The items emitted by this call.
        """
        emitted_before = len(self._items)
        if full_text is not None:
            replay = StreamDecoder()
            replay.feed(full_text)
            replay.finish()
            for item in replay.items:
                self._emit(item)

        if self.state in (DecoderState.IN_ITEM, DecoderState.AWAITING_CLOSE):
            logger.debug("Discarding incomplete item at end of stream (key=%r)", self._value('key'))
        elif self.state is DecoderState.IN_REASONING_BLOCK:
            self._end_reasoning()
        self._reset_item()
        self._buffer = ''
        self.state = DecoderState.SCANNING
        return self._items[emitted_before:]

    # --- state handlers ---

    def _step(self) -> bool:
        if self.state is DecoderState.SCANNING:
            return self._scan()
        if self.state is DecoderState.IN_REASONING_BLOCK:
            return self._read_reasoning()
        return self._read_item()

    def _next_tag(self) -> Optional[str]:
        """Consume up to and including the next complete tag and return its body."""
        buf = self._buffer
        while True:
            start = buf.find('<')
            if start < 0:
                self._buffer = ''
                return None
            limit = buf.find('>', start)
            inner = buf.find('<', start + 1, limit if limit >= 0 else len(buf))
            if inner >= 0:
                buf = buf[inner:]
                continue
            if limit < 0:
                self._buffer = buf[start:]
                return None
            self._buffer = buf[limit + 1:]
            return buf[start + 1:limit].strip()

    def _scan(self) -> bool:
        tag = self._next_tag()
        if tag is None:
            return False
        name = _tag_name(tag)
        if name in REASONING_TAGS:
            self.state = DecoderState.IN_REASONING_BLOCK
            self._reasoning_close = f'</{name}>'
            self._reasoning_close_pattern = re.compile(re.escape(self._reasoning_close), re.IGNORECASE)
            self._reasoning_parts = []
            if self.on_reasoning_start:
                self.on_reasoning_start()
        elif name == 'item':
            self._reset_item()
            self.state = DecoderState.IN_ITEM
        return True

    def _read_reasoning(self) -> bool:
        buf = self._buffer
        match = self._reasoning_close_pattern.search(buf)
        if match is None:
            keep = _partial_suffix(buf, self._reasoning_close)
            self._forward_reasoning(buf[:len(buf) - keep])
            self._buffer = buf[len(buf) - keep:]
            return False
        self._forward_reasoning(buf[:match.start()])
        self._buffer = buf[match.end():]
        self._end_reasoning()
        self.state = DecoderState.SCANNING
        return True

    def _forward_reasoning(self, text: str) -> None:
        if not text:
            return
        self._reasoning_parts.append(text)
        if self.on_reasoning_delta:
            self.on_reasoning_delta(text)

    def _end_reasoning(self) -> None:
        content = ''.join(self._reasoning_parts)
        self._reasoning_parts = []
        if self.on_reasoning_end:
            self.on_reasoning_end(content)

    def _read_item(self) -> bool:
        if self._field is not None:
            return self._read_field()

        tag = self._next_tag()
        if tag is None:
            if self._buffer:
                self.state = DecoderState.AWAITING_CLOSE
            return False
        self.state = DecoderState.IN_ITEM
        name = _tag_name(tag)
        if name == '/item':
            self._finish_item()
        elif name in ITEM_FIELDS:
            self._field = name
            self._segments[name] = []
        return True

    def _read_field(self) -> bool:
        buf = self._buffer
        if self._quote is not None:
            end = buf.find(self._quote)
            if end < 0:
                keep = _partial_suffix(buf, self._quote)
                self._append(buf[:len(buf) - keep], quoted=True)
                self._buffer = buf[len(buf) - keep:]
                return False
            self._append(buf[:end], quoted=True)
            self._buffer = buf[end + len(self._quote):]
            self._quote = None
            return True

        lt = buf.find('<')
        tq = buf.find(TRIPLE_QUOTE)
        if tq >= 0 and (lt < 0 or tq < lt):
            self._append(buf[:tq], quoted=False)
            self._buffer = buf[tq + len(TRIPLE_QUOTE):]
            self._quote = TRIPLE_QUOTE
            return True
        if lt < 0:
            keep = _partial_suffix(buf, TRIPLE_QUOTE)
            self._append(buf[:len(buf) - keep], quoted=False)
            self._buffer = buf[len(buf) - keep:]
            return False

        self._append(buf[:lt], quoted=False)
        buf = buf[lt:]
        field_close = f'</{self._field}>'
        if _starts_with(buf, CDATA_OPEN):
            self._buffer = buf[len(CDATA_OPEN):]
            self._quote = CDATA_CLOSE
            return True
        if _starts_with(buf, field_close):
            self._buffer = buf[len(field_close):]
            self._close_field()
            return True
        if _starts_with(buf, ITEM_CLOSE):
            # Field never closed, the item close ends it.
            self._buffer = buf[len(ITEM_CLOSE):]
            self._close_field()
            self._finish_item()
            return True
        if any(_is_partial(buf, marker) for marker in (CDATA_OPEN, field_close, ITEM_CLOSE)):
            self._buffer = buf
            self.state = DecoderState.AWAITING_CLOSE
            return False

        self._append('<', quoted=False)
        self._buffer = buf[1:]
        return True

    # --- item assembly ---

    def _append(self, text: str, quoted: bool) -> None:
        if not text:
            return
        segments = self._segments.setdefault(self._field, [])
        if segments and segments[-1][1] == quoted:
            segments[-1] = (segments[-1][0] + text, quoted)
        else:
            segments.append((text, quoted))

    def _value(self, name: str) -> str:
        segments = self._segments.get(name, [])
        return ''.join(text if quoted else html.unescape(text) for text, quoted in segments).strip()

    def _close_field(self) -> None:
        closed = self._field
        self._field = None
        self._quote = None
        if closed == 'key' and self.on_item_started:
            key = self._value('key')
            if key and key not in self._seen:
                self.on_item_started(key)

    def _finish_item(self) -> None:
        key = self._value('key')
        translated = self._value('trx')
        comment = self._value('comment') or None
        self._reset_item()
        self.state = DecoderState.SCANNING
        if not key:
            logger.debug("Skipping item without a key")
            return
        self._emit(LocalizedItem(key=key, translated=translated, comment=comment))

    def _emit(self, item: LocalizedItem) -> None:
        if item.key in self._seen:
            return
        self._seen.add(item.key)
        self._items.append(item)
        if self.on_item:
            self.on_item(item)

    def _reset_item(self) -> None:
        self._field = None
        self._quote = None
        self._segments = {}


def decode_response(text: str) -> List[LocalizedItem]:
    """Decode a complete, non-streamed response."""
    decoder = StreamDecoder()
    decoder.feed(text)
    decoder.finish()
    return decoder.items
