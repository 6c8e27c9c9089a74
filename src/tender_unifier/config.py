from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

DEFAULT_SOURCES = [
    {"name": "sam_gov", "enabled": True, "fast_path": True, "language": "en"},
    {"name": "wb", "enabled": True, "fast_path": True, "language": "en"},
    {"name": "adb", "enabled": True, "fast_path": True, "language": "en"},
    {"name": "afd_tenders", "enabled": True, "fast_path": True, "language": None},
    {"name": "ungm", "enabled": True, "fast_path": False, "language": "en"},
    {"name": "iadb", "enabled": True, "fast_path": False, "language": "en"},
    {"name": "ted_eu", "enabled": True, "fast_path": False, "language": None},
]


def _bool_from_env(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _int_from_env(value: Optional[str], default: int) -> int:
    if value is None or not str(value).strip():
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default


def _float_from_env(value: Optional[str], default: float) -> float:
    if value is None or not str(value).strip():
        return default
    try:
        return float(str(value).strip())
    except ValueError:
        return default


def _list_from_env(value: Optional[str], default: list[str]) -> list[str]:
    if value is None or not str(value).strip():
        return list(default)
    return [v.strip() for v in str(value).split(",") if v.strip()]


def _resolve_path(repo_root: Path, value: Optional[str], default: str) -> Path:
    raw = value if value else default
    path = Path(raw)
    if not path.is_absolute():
        path = repo_root / path
    return path


def _relativize_path(path: Path, repo_root: Path) -> str:
    try:
        return str(path.relative_to(repo_root))
    except ValueError:
        return str(path)


def _deep_merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_repo_root(start: Optional[Path] = None) -> Path:
    env_root = os.getenv("TENDER_UNIFIER_HOME")
    if env_root:
        return Path(env_root).expanduser().resolve()

    candidates = []
    if start:
        candidates.append(Path(start).resolve())
    candidates.append(Path.cwd().resolve())
    candidates.append(Path(__file__).resolve())

    for base in candidates:
        for parent in [base] + list(base.parents):
            if (parent / "pyproject.toml").exists() or (parent / ".git").exists():
                return parent

    return Path.cwd().resolve()


def get_config_path(repo_root: Optional[Path] = None) -> Path:
    env_path = os.getenv("TENDER_UNIFIER_CONFIG")
    if env_path:
        return Path(env_path).expanduser().resolve()
    repo_root = repo_root or get_repo_root()
    return repo_root / "config.yaml"


@dataclass
class PathsConfig:
    repo_root: Path
    data_dir: Path
    log_dir: Path
    db_path: Path

    def to_dict(self) -> dict:
        return {
            "data_dir": _relativize_path(self.data_dir, self.repo_root),
            "log_dir": _relativize_path(self.log_dir, self.repo_root),
            "db_path": _relativize_path(self.db_path, self.repo_root),
        }


@dataclass
class LLMConfig:
    enabled: bool = True
    api_key: str = ""
    model: str = "gpt-4o-mini"
    api_base: str = "https://api.openai.com/v1"
    timeout_s: int = 120
    temperature: float = 0.2
    max_tokens: int = 8192
    max_retries: int = 3
    max_requests_per_minute: int = 0

    @property
    def available(self) -> bool:
        return bool(self.enabled and self.api_key)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "api_key": self.api_key,
            "model": self.model,
            "api_base": self.api_base,
            "timeout_s": self.timeout_s,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "max_retries": self.max_retries,
            "max_requests_per_minute": self.max_requests_per_minute,
        }


@dataclass
class IngestConfig:
    default_limit: int = 100
    chunk_size: int = 20
    round_batch_size: int = 5
    concurrency: int = 5
    stagger_s: float = 0.1
    llm_timeout_s: float = 20.0
    default_language: str = "en"

    def to_dict(self) -> dict:
        return {
            "default_limit": self.default_limit,
            "chunk_size": self.chunk_size,
            "round_batch_size": self.round_batch_size,
            "concurrency": self.concurrency,
            "stagger_s": self.stagger_s,
            "llm_timeout_s": self.llm_timeout_s,
            "default_language": self.default_language,
        }


@dataclass
class SourceConfig:
    name: str
    enabled: bool = True
    fast_path: bool = False
    language: Optional[str] = None
    llm_timeout_s: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "fast_path": self.fast_path,
            "language": self.language,
            "llm_timeout_s": self.llm_timeout_s,
        }


def source_from_dict(data: dict) -> SourceConfig:
    timeout = data.get("llm_timeout_s")
    language = data.get("language")
    return SourceConfig(
        name=str(data.get("name", "")).strip(),
        enabled=bool(data.get("enabled", True)),
        fast_path=bool(data.get("fast_path", False)),
        language=str(language) if language else None,
        llm_timeout_s=float(timeout) if timeout not in (None, "") else None,
    )


@dataclass
class AppConfig:
    app_env: str = "dev"
    timezone: str = "UTC"
    paths: PathsConfig = field(
        default_factory=lambda: build_paths(get_repo_root(), {})
    )
    llm: LLMConfig = field(default_factory=LLMConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    sources: list[SourceConfig] = field(
        default_factory=lambda: [source_from_dict(s) for s in DEFAULT_SOURCES]
    )

    def source(self, name: str) -> SourceConfig:
        for item in self.sources:
            if item.name == name:
                return item
        return SourceConfig(name=name)

    def enabled_sources(self) -> list[str]:
        return [s.name for s in self.sources if s.enabled]

    def llm_timeout_for(self, name: str) -> float:
        override = self.source(name).llm_timeout_s
        return float(override) if override else float(self.ingest.llm_timeout_s)

    def to_dict(self) -> dict:
        return {
            "app": {"env": self.app_env, "timezone": self.timezone},
            "paths": self.paths.to_dict(),
            "llm": self.llm.to_dict(),
            "ingest": self.ingest.to_dict(),
            "sources": [s.to_dict() for s in self.sources],
        }


def build_paths(repo_root: Path, data: dict) -> PathsConfig:
    data_dir = _resolve_path(repo_root, data.get("data_dir") if data else None, "data")
    log_dir = _resolve_path(repo_root, data.get("log_dir") if data else None, "logs")
    db_path = _resolve_path(
        repo_root,
        data.get("db_path") if data else None,
        str(data_dir / "tenders.db"),
    )
    return PathsConfig(
        repo_root=repo_root,
        data_dir=data_dir,
        log_dir=log_dir,
        db_path=db_path,
    )


def default_config_dict(repo_root: Path) -> dict:
    return {
        "app": {"env": "dev", "timezone": "UTC"},
        "paths": {
            "data_dir": "data",
            "log_dir": "logs",
            "db_path": "data/tenders.db",
        },
        "llm": LLMConfig().to_dict(),
        "ingest": IngestConfig().to_dict(),
        "sources": [dict(s) for s in DEFAULT_SOURCES],
    }


def config_from_dict(repo_root: Path, data: dict) -> AppConfig:
    app = data.get("app", {}) if isinstance(data, dict) else {}
    paths_data = data.get("paths", {}) if isinstance(data, dict) else {}
    llm_data = data.get("llm", {}) if isinstance(data, dict) else {}
    ingest_data = data.get("ingest", {}) if isinstance(data, dict) else {}
    sources_data = data.get("sources", None) if isinstance(data, dict) else None
    if not isinstance(sources_data, list):
        sources_data = DEFAULT_SOURCES

    return AppConfig(
        app_env=str(app.get("env", "dev")),
        timezone=str(app.get("timezone", "UTC")),
        paths=build_paths(repo_root, paths_data),
        llm=LLMConfig(
            enabled=bool(llm_data.get("enabled", True)),
            api_key=str(llm_data.get("api_key", "") or ""),
            model=str(llm_data.get("model", "gpt-4o-mini")),
            api_base=str(llm_data.get("api_base", "https://api.openai.com/v1")),
            timeout_s=int(llm_data.get("timeout_s", 120)),
            temperature=float(llm_data.get("temperature", 0.2)),
            max_tokens=int(llm_data.get("max_tokens", 8192)),
            max_retries=int(llm_data.get("max_retries", 3)),
            max_requests_per_minute=int(llm_data.get("max_requests_per_minute", 0)),
        ),
        ingest=IngestConfig(
            default_limit=int(ingest_data.get("default_limit", 100)),
            chunk_size=max(1, int(ingest_data.get("chunk_size", 20))),
            round_batch_size=max(1, int(ingest_data.get("round_batch_size", 5))),
            concurrency=max(1, int(ingest_data.get("concurrency", 5))),
            stagger_s=float(ingest_data.get("stagger_s", 0.1)),
            llm_timeout_s=float(ingest_data.get("llm_timeout_s", 20.0)),
            default_language=str(ingest_data.get("default_language", "en")),
        ),
        sources=[source_from_dict(s) for s in sources_data if isinstance(s, dict) and s.get("name")],
    )


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    content = path.read_text(encoding="utf-8").strip()
    if not content:
        return {}
    data = yaml.safe_load(content)
    return data if isinstance(data, dict) else {}


def load_config(
    path: Optional[Path] = None,
    apply_env: bool = True,
    load_env_file: bool = True,
) -> AppConfig:
    repo_root = get_repo_root()
    config_path = path or get_config_path(repo_root)

    if load_env_file:
        env_path = repo_root / ".env"
        if env_path.exists():
            load_dotenv(env_path)

    defaults = default_config_dict(repo_root)
    yaml_data = _load_yaml(config_path)
    merged = _deep_merge(defaults, yaml_data)
    config = config_from_dict(repo_root, merged)

    if apply_env:
        apply_env_overrides(config)

    return config


def save_config(config: AppConfig, path: Optional[Path] = None) -> Path:
    repo_root = config.paths.repo_root
    config_path = path or get_config_path(repo_root)
    payload: dict[str, Any] = config.to_dict()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        yaml.safe_dump(payload, sort_keys=False, allow_unicode=False),
        encoding="utf-8",
    )
    return config_path


def apply_env_overrides(config: AppConfig) -> AppConfig:
    config.app_env = os.getenv("APP_ENV", config.app_env)
    config.timezone = os.getenv("TENDER_UNIFIER_TIMEZONE", config.timezone)

    data_dir = os.getenv("TENDER_UNIFIER_DATA_DIR")
    log_dir = os.getenv("TENDER_UNIFIER_LOG_DIR")
    db_path = os.getenv("TENDER_UNIFIER_DB_PATH")
    if data_dir or log_dir or db_path:
        repo_root = config.paths.repo_root
        paths_data = {
            "data_dir": data_dir or _relativize_path(config.paths.data_dir, repo_root),
            "log_dir": log_dir or _relativize_path(config.paths.log_dir, repo_root),
            "db_path": db_path or _relativize_path(config.paths.db_path, repo_root),
        }
        config.paths = build_paths(repo_root, paths_data)

    config.llm.api_key = os.getenv(
        "OPENAI_API_KEY",
        os.getenv("OPENAI_KEY", config.llm.api_key),
    )
    config.llm.model = os.getenv("OPENAI_MODEL", config.llm.model)
    config.llm.api_base = os.getenv("OPENAI_API_BASE", config.llm.api_base)
    config.llm.timeout_s = _int_from_env(
        os.getenv("OPENAI_TIMEOUT"),
        config.llm.timeout_s,
    )
    config.llm.enabled = _bool_from_env(
        os.getenv("TENDER_UNIFIER_LLM_ENABLED"),
        config.llm.enabled,
    )
    config.llm.max_retries = _int_from_env(
        os.getenv("TENDER_UNIFIER_LLM_MAX_RETRIES"),
        config.llm.max_retries,
    )
    config.llm.max_requests_per_minute = _int_from_env(
        os.getenv("TENDER_UNIFIER_LLM_RPM"),
        config.llm.max_requests_per_minute,
    )

    config.ingest.default_limit = _int_from_env(
        os.getenv("TENDER_UNIFIER_DEFAULT_LIMIT"),
        config.ingest.default_limit,
    )
    config.ingest.chunk_size = max(
        1,
        _int_from_env(os.getenv("TENDER_UNIFIER_CHUNK_SIZE"), config.ingest.chunk_size),
    )
    config.ingest.round_batch_size = max(
        1,
        _int_from_env(os.getenv("TENDER_UNIFIER_ROUND_BATCH_SIZE"), config.ingest.round_batch_size),
    )
    config.ingest.concurrency = max(
        1,
        _int_from_env(os.getenv("TENDER_UNIFIER_CONCURRENCY"), config.ingest.concurrency),
    )
    config.ingest.stagger_s = _float_from_env(
        os.getenv("TENDER_UNIFIER_STAGGER_S"),
        config.ingest.stagger_s,
    )
    config.ingest.llm_timeout_s = _float_from_env(
        os.getenv("TENDER_UNIFIER_LLM_TIMEOUT_S"),
        config.ingest.llm_timeout_s,
    )
    config.ingest.default_language = os.getenv(
        "TENDER_UNIFIER_DEFAULT_LANGUAGE",
        config.ingest.default_language,
    )

    fast_path = os.getenv("TENDER_UNIFIER_FAST_PATH_SOURCES")
    if fast_path is not None:
        wanted = set(_list_from_env(fast_path, []))
        known = {s.name for s in config.sources}
        for item in config.sources:
            item.fast_path = item.name in wanted
        for name in sorted(wanted - known):
            config.sources.append(SourceConfig(name=name, fast_path=True))

    return config
