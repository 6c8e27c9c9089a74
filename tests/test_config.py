from __future__ import annotations

import pytest

from tender_unifier.config import AppConfig, SourceConfig, load_config, save_config

ENV_VARS = [
    "APP_ENV",
    "OPENAI_API_KEY",
    "OPENAI_KEY",
    "OPENAI_MODEL",
    "OPENAI_API_BASE",
    "OPENAI_TIMEOUT",
    "TENDER_UNIFIER_CONFIG",
    "TENDER_UNIFIER_TIMEZONE",
    "TENDER_UNIFIER_DATA_DIR",
    "TENDER_UNIFIER_LOG_DIR",
    "TENDER_UNIFIER_DB_PATH",
    "TENDER_UNIFIER_LLM_ENABLED",
    "TENDER_UNIFIER_LLM_MAX_RETRIES",
    "TENDER_UNIFIER_LLM_RPM",
    "TENDER_UNIFIER_DEFAULT_LIMIT",
    "TENDER_UNIFIER_CHUNK_SIZE",
    "TENDER_UNIFIER_ROUND_BATCH_SIZE",
    "TENDER_UNIFIER_CONCURRENCY",
    "TENDER_UNIFIER_STAGGER_S",
    "TENDER_UNIFIER_LLM_TIMEOUT_S",
    "TENDER_UNIFIER_DEFAULT_LANGUAGE",
    "TENDER_UNIFIER_FAST_PATH_SOURCES",
]


@pytest.fixture
def home(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TENDER_UNIFIER_HOME", str(tmp_path))
    return tmp_path.resolve()


def test_defaults_without_config_file(home):
    config = load_config(load_env_file=False)
    assert config.paths.db_path == home / "data" / "tenders.db"
    assert config.paths.log_dir == home / "logs"
    assert config.llm.api_key == ""
    assert not config.llm.available
    assert config.ingest.chunk_size == 20
    assert config.ingest.round_batch_size == 5
    assert config.source("sam_gov").fast_path
    assert not config.source("ungm").fast_path
    assert "ted_eu" in config.enabled_sources()
    assert config.source("afd_tenders").fast_path
    assert "dgmarket" not in config.enabled_sources()


def test_yaml_values_are_merged(home):
    (home / "config.yaml").write_text(
        "llm:\n"
        "  model: gpt-4.1-mini\n"
        "ingest:\n"
        "  concurrency: 0\n"
        "  llm_timeout_s: 30\n"
        "sources:\n"
        "  - name: ungm\n"
        "    language: en\n"
        "    llm_timeout_s: 45\n"
        "  - name: ted_eu\n"
        "    enabled: false\n",
        encoding="utf-8",
    )
    config = load_config(load_env_file=False)
    assert config.llm.model == "gpt-4.1-mini"
    assert config.llm.max_retries == 3
    assert config.ingest.concurrency == 1
    assert [s.name for s in config.sources] == ["ungm", "ted_eu"]
    assert config.enabled_sources() == ["ungm"]
    assert config.llm_timeout_for("ungm") == 45.0
    assert config.llm_timeout_for("ted_eu") == 30.0
    assert config.source("unknown") == SourceConfig(name="unknown")


def test_env_overrides(home, monkeypatch):
    monkeypatch.setenv("OPENAI_KEY", "legacy-key")
    monkeypatch.setenv("TENDER_UNIFIER_DB_PATH", "custom/store.db")
    monkeypatch.setenv("TENDER_UNIFIER_CONCURRENCY", "not-a-number")
    monkeypatch.setenv("TENDER_UNIFIER_CHUNK_SIZE", "7")
    monkeypatch.setenv("TENDER_UNIFIER_LLM_ENABLED", "no")
    monkeypatch.setenv("TENDER_UNIFIER_ROUND_BATCH_SIZE", "0")
    config = load_config(load_env_file=False)
    assert config.llm.api_key == "legacy-key"
    assert not config.llm.enabled
    assert not config.llm.available
    assert config.paths.db_path == home / "custom" / "store.db"
    assert config.paths.data_dir == home / "data"
    assert config.ingest.concurrency == 5
    assert config.ingest.chunk_size == 7
    assert config.ingest.round_batch_size == 1

    monkeypatch.setenv("OPENAI_API_KEY", "primary-key")
    assert load_config(load_env_file=False).llm.api_key == "primary-key"


def test_fast_path_sources_from_env(home, monkeypatch):
    monkeypatch.setenv("TENDER_UNIFIER_FAST_PATH_SOURCES", "ungm, new_feed")
    config = load_config(load_env_file=False)
    assert config.source("ungm").fast_path
    assert not config.source("sam_gov").fast_path
    assert config.source("new_feed").fast_path
    assert "new_feed" in config.enabled_sources()


def test_dotenv_file_is_loaded(home, monkeypatch):
    (home / ".env").write_text("OPENAI_API_KEY=from-dotenv\n", encoding="utf-8")
    config = load_config()
    assert config.llm.api_key == "from-dotenv"


def test_explicit_config_path(home, monkeypatch):
    other = home / "elsewhere" / "settings.yaml"
    other.parent.mkdir()
    other.write_text("app:\n  timezone: Europe/Paris\n", encoding="utf-8")
    assert load_config(other, load_env_file=False).timezone == "Europe/Paris"

    monkeypatch.setenv("TENDER_UNIFIER_CONFIG", str(other))
    assert load_config(load_env_file=False).timezone == "Europe/Paris"


def test_saved_config_loads_back(home):
    config = AppConfig()
    config.ingest.stagger_s = 0.5
    config.sources = [SourceConfig(name="wb", fast_path=True, language="en")]
    path = save_config(config, home / "config.yaml")
    loaded = load_config(path, apply_env=False, load_env_file=False)
    assert loaded.ingest.stagger_s == 0.5
    assert loaded.sources == config.sources
    assert loaded.paths.db_path == config.paths.db_path
