import pytest

from config.settings import AppSettings
from indexer.embeddings import EmbeddingManager
from indexer.sqlite_adapter import SQLiteAdapter
from server.security import limiter

from helpers import DIMENSIONS, KeywordEmbeddingBackend, run


@pytest.fixture
def store():
    adapter = SQLiteAdapter(":memory:", embedding_dimensions=DIMENSIONS)
    run(adapter.initialize())
    yield adapter
    run(adapter.close())


@pytest.fixture
def website(store):
    return run(store.create_website("example.com", "Example Co", api_key="key-example"))


@pytest.fixture
def other_website(store):
    return run(store.create_website("other.org", "Other Org", api_key="key-other"))


@pytest.fixture
def settings():
    settings = AppSettings()
    settings.embedding.batch_delay = 0.0
    return settings


@pytest.fixture
def embeddings():
    return EmbeddingManager(KeywordEmbeddingBackend(), dimensions=DIMENSIONS, batch_delay=0.0)


@pytest.fixture(autouse=True)
def disable_rate_limits():
    limiter.enabled = False
    yield
    limiter.enabled = True
