from typing import Any, Dict, List, Mapping

from ai_translator.models import PipelineStage, TranslationContext
from ai_translator.plugins.base import MiddlewarePlugin, NextHandler
from ai_translator.prompts import count_tokens


def split_into_chunks(texts: Mapping[str, str], max_tokens: int, model_name: str = 'gpt-4o') -> List[List[str]]:
    """
    Group keys into batches whose estimated prompt size stays under ``max_tokens``.

    Key order is preserved. A single text larger than the limit is placed in
    a batch of its own rather than split.

    Args:
        texts (Mapping[str, str]): Key to source text.
        max_tokens (int): Token limit per batch.
        model_name (str): Model whose tokenizer is used for counting.

    Returns:
        List[List[str]]: The batches, as lists of keys.
    """
    chunks: List[List[str]] = []
    current: List[str] = []
    current_tokens = 0
    for key, text in texts.items():
        tokens = count_tokens(f'- `{key}`: """{text}"""', model_name)
        if current and current_tokens + tokens > max_tokens:
            chunks.append(current)
            current, current_tokens = [], 0
        current.append(key)
        current_tokens += tokens
    if current:
        chunks.append(current)
    return chunks


class TokenChunkingPlugin(MiddlewarePlugin):
    """Splits the working set into batches that fit one backend call."""
    name = 'token_chunking'
    priority = 100
    stage = PipelineStage.CHUNKING
    default_config: Mapping[str, Any] = {
        'max_tokens_per_chunk': 2000,
        'buffer_percentage': 0.9,
        'model': 'gpt-4o',
    }

    async def handle(self, context: TranslationContext, next_handler: NextHandler) -> None:
        max_tokens = int(self.settings.for_context(context, 'max_tokens_per_chunk', 2000))
        buffer = float(self.settings.for_context(context, 'buffer_percentage', 0.9))
        model_name = self.settings.for_context(context, 'model', 'gpt-4o')
        limit = max(int(max_tokens * buffer), 1)

        texts = {key: entry.text for key, entry in context.texts.items()}
        chunks = split_into_chunks(texts, limit, model_name)
        for chunk in chunks:
            if len(chunk) == 1 and count_tokens(texts[chunk[0]], model_name) > limit:
                self.settings.warning("Text for '%s' exceeds the chunk limit of %d tokens; sent on its own",
                                      chunk[0], limit)

        context.set_plugin_data(self.name, 'chunks', chunks)
        stats: Dict[str, Any] = {'chunk_count': len(chunks), 'key_count': len(texts), 'token_limit': limit}
        context.set_plugin_data(self.name, 'stats', stats)
        self.settings.debug("Split %d key(s) into %d chunk(s)", len(texts), len(chunks))
        await next_handler(context)
