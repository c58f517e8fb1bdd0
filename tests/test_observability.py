import json
import logging

import pytest

from config.database import DatabaseConfig, DatabaseType
from config.settings import AppSettings
from observability.logging import JSONFormatter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("server.chat", logging.INFO, __file__, 10, "answered %s", ("q1",), None)
    record.website_id = "w1"

    entry = json.loads(JSONFormatter("sitechat-test").format(record))

    assert entry["message"] == "answered q1"
    assert entry["service"] == "sitechat-test"
    assert entry["level"] == "INFO"
    assert entry["website_id"] == "w1"


def test_setup_logging_writes_json_file(tmp_path, restore_root_logger):
    log_file = tmp_path / "logs" / "sitechat.log"
    setup_logging(level="DEBUG", log_file=str(log_file), use_colors=False)

    logging.getLogger("pipelines.crawler").info("Crawling: https://example.com")
    for handler in restore_root_logger.handlers:
        handler.flush()

    lines = log_file.read_text().splitlines()
    assert json.loads(lines[-1])["message"] == "Crawling: https://example.com"
    assert logging.getLogger("apscheduler").level == logging.WARNING


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("EMBEDDING_PROVIDER", "openai")
    monkeypatch.setenv("RAG_TOP_K", "8")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.test, https://b.test")
    monkeypatch.setenv("CRAWL_ALLOW_PRIVATE_NETWORKS", "yes")
    monkeypatch.delenv("EMBEDDING_MODEL", raising=False)

    settings = AppSettings.from_env(env_file="/nonexistent/.env")

    assert settings.embedding.provider == "openai"
    assert settings.embedding.model_name == "text-embedding-3-small"
    assert settings.retrieval.top_k == 8
    assert settings.retrieval.similarity_threshold == 0.7
    assert settings.cors_origins == ["https://a.test", "https://b.test"]
    assert settings.crawl.allow_private_networks is True


def test_database_config_from_env(monkeypatch):
    monkeypatch.setenv("SITECHAT_DB_TYPE", "postgresql")
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/sitechat")
    monkeypatch.setenv("EMBEDDING_DIMENSIONS", "768")

    config = DatabaseConfig.from_env()

    assert config.type == DatabaseType.POSTGRESQL
    assert config.embedding_dimensions == 768
    assert config.postgres.connect_kwargs() == {"dsn": "postgresql://u:p@db:5432/sitechat"}
