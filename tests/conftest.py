import logging
from unittest.mock import AsyncMock, patch

import pytest

from ai_translator.models import ProviderConfig
from tests.backend_stubs import BackendRouter, ScriptedBackend, xml_response


@pytest.fixture(autouse=True)
def no_retry_sleep():
    """Retries back off with asyncio.sleep; tests never wait for real."""
    with patch('ai_translator.retry_loop.asyncio.sleep', new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


@pytest.fixture(autouse=True)
def word_token_count():
    """Chunking counts words instead of loading tiktoken encodings."""
    with patch('ai_translator.plugins.token_chunking.count_tokens',
               side_effect=lambda text, model_name='gpt-4o': len(text.split())) as mock_count:
        yield mock_count


@pytest.fixture(autouse=True)
def quiet_logging():
    logging.disable(logging.CRITICAL)
    yield
    logging.disable(logging.NOTSET)


@pytest.fixture
def provider():
    return ProviderConfig(vendor='openai', model='gpt-4o', label='primary')


@pytest.fixture
def scripted_backend():
    """Factory for :class:`ScriptedBackend` instances."""
    return ScriptedBackend


@pytest.fixture
def korean_backend():
    return ScriptedBackend([xml_response({'greeting': '안녕하세요'})])


@pytest.fixture
def router(korean_backend):
    return BackendRouter({}, default=korean_backend)
