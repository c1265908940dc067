"""User configuration: a TOML file validated into pydantic models.

Lookup order for the file is ``--config``, then ``$NEXUS_CONFIG``, then
``$XDG_CONFIG_HOME/nexus-forge/config.toml`` (``~/.config`` when unset). A
missing file means defaults; an unreadable or invalid one is a ``ConfigError``.
"""

import logging
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from nexus_forge.ai.types import EndpointSettings, RouterConfig
from nexus_forge.core.discovery import DEFAULT_EXCLUDE_PATTERNS
from nexus_forge.core.embedder import DEFAULT_DIMENSION
from nexus_forge.core.indexer import DEFAULT_EXACT_SEARCH_THRESHOLD, IndexOptions, default_workers
from nexus_forge.core.search import SearchOptions
from nexus_forge.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV = "NEXUS_CONFIG"
PROXY_URL_ENV = "NEXUS_PROXY_URL"
OLLAMA_HOST_ENV = "OLLAMA_HOST"
OLLAMA_MODEL_ENV = "OLLAMA_MODEL"
CONFIG_FILE_NAME = "config.toml"
APP_DIR_NAME = "nexus-forge"


class GeneralSettings(BaseModel):
    theme: str = "dark"


class ProviderSettings(BaseModel):
    api_key_env: str | None = None
    model: str | None = None
    endpoint: str | None = None
    max_tokens: int = Field(default=4096, gt=0)
    timeout_seconds: float | None = Field(default=None, gt=0)


def _default_providers() -> dict[str, ProviderSettings]:
    return {
        "claude": ProviderSettings(api_key_env="ANTHROPIC_API_KEY", model="claude-sonnet-4-20250514"),
        "proxy": ProviderSettings(),
        "ollama": ProviderSettings(model="codellama"),
    }


class AiSettings(BaseModel):
    default_provider: Literal["claude", "proxy", "ollama"] = "claude"
    max_retries: int = Field(default=3, ge=0)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_max_seconds: float = Field(default=8.0, ge=0)
    providers: dict[str, ProviderSettings] = Field(default_factory=_default_providers)

    def provider(self, name: str) -> ProviderSettings:
        return self.providers.get(name) or _default_providers().get(name) or ProviderSettings()


class IndexSettings(BaseModel):
    exclude_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    max_file_size_mb: int = Field(default=10, ge=0)
    workers: int | None = Field(default=None, ge=1)
    exact_search_threshold: int = Field(default=DEFAULT_EXACT_SEARCH_THRESHOLD, ge=0)
    min_nested_lines: int = Field(default=5, ge=1)
    dimension: int = Field(default=DEFAULT_DIMENSION, ge=16)
    nprobe: int = Field(default=8, ge=1)


class Settings(BaseModel):
    general: GeneralSettings = Field(default_factory=GeneralSettings)
    ai: AiSettings = Field(default_factory=AiSettings)
    index: IndexSettings = Field(default_factory=IndexSettings)

    def index_options(self, workers: int | None = None) -> IndexOptions:
        max_size = self.index.max_file_size_mb * 1024 * 1024 if self.index.max_file_size_mb else None
        return IndexOptions(
            exclude_patterns=tuple(self.index.exclude_patterns),
            max_file_size=max_size,
            workers=workers or self.index.workers or default_workers(),
            min_nested_lines=self.index.min_nested_lines,
            exact_search_threshold=self.index.exact_search_threshold,
        )

    def search_options(self) -> SearchOptions:
        return SearchOptions(exact_search_threshold=self.index.exact_search_threshold, nprobe=self.index.nprobe)


def default_config_path(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    if env.get(CONFIG_ENV):
        return Path(env[CONFIG_ENV]).expanduser()
    base = Path(env["XDG_CONFIG_HOME"]) if env.get("XDG_CONFIG_HOME") else Path.home() / ".config"
    return base / APP_DIR_NAME / CONFIG_FILE_NAME


def load_settings(path: Path | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    config_path = path or default_config_path(environ)
    if not config_path.exists():
        if path is not None:
            raise ConfigError(f"Config file {config_path} does not exist")
        logger.debug("No config at %s, using defaults", config_path)
        return Settings()
    try:
        with config_path.open("rb") as fh:
            raw = tomllib.load(fh)
    except OSError as exc:
        raise ConfigError(f"Cannot read {config_path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(p) for p in first["loc"])
        raise ConfigError(f"Invalid setting '{location}' in {config_path}: {first['msg']}") from exc


def _endpoint(settings: ProviderSettings, base_url: str, default: EndpointSettings) -> EndpointSettings:
    return EndpointSettings(
        base_url=base_url,
        model=settings.model or default.model,
        max_tokens=settings.max_tokens,
        timeout_seconds=settings.timeout_seconds or default.timeout_seconds,
    )


def router_config_from_settings(settings: Settings, environ: Mapping[str, str] | None = None) -> RouterConfig:
    """Resolve keys and endpoints; environment variables win over the file."""
    env = os.environ if environ is None else environ
    defaults = RouterConfig()
    ai = settings.ai

    claude = ai.provider("claude")
    proxy = ai.provider("proxy")
    ollama = ai.provider("ollama")
    api_key = env.get(claude.api_key_env or "ANTHROPIC_API_KEY") or None

    ollama_endpoint = _endpoint(
        ollama,
        env.get(OLLAMA_HOST_ENV) or ollama.endpoint or defaults.ollama.base_url,
        defaults.ollama,
    )
    if env.get(OLLAMA_MODEL_ENV):
        ollama_endpoint = ollama_endpoint.model_copy(update={"model": env[OLLAMA_MODEL_ENV]})

    return RouterConfig(
        api_key=api_key,
        default_provider=ai.default_provider,
        max_retries=ai.max_retries,
        backoff_base_seconds=ai.backoff_base_seconds,
        backoff_max_seconds=ai.backoff_max_seconds,
        claude=_endpoint(claude, claude.endpoint or defaults.claude.base_url, defaults.claude),
        proxy=_endpoint(proxy, env.get(PROXY_URL_ENV) or proxy.endpoint or defaults.proxy.base_url, defaults.proxy),
        ollama=ollama_endpoint,
    )


_DEFAULT_CONFIG = """\
# nexus-forge configuration

[general]
theme = "dark"

[ai]
# claude | proxy | ollama
default_provider = "claude"
max_retries = 3
backoff_base_seconds = 0.5

[ai.providers.claude]
api_key_env = "ANTHROPIC_API_KEY"
model = "claude-sonnet-4-20250514"
max_tokens = 4096

[ai.providers.proxy]
# endpoint = "https://api-nexus.mustafasarac.com"
max_tokens = 4096

[ai.providers.ollama]
model = "codellama"
endpoint = "http://localhost:11434"
max_tokens = 4096

[index]
exclude_patterns = {patterns}
max_file_size_mb = 10
exact_search_threshold = {threshold}
min_nested_lines = 5
dimension = {dimension}
"""


def render_default_config() -> str:
    patterns = "[" + ", ".join(f'"{p}"' for p in DEFAULT_EXCLUDE_PATTERNS) + "]"
    return (
        _DEFAULT_CONFIG.replace("{patterns}", patterns)
        .replace("{threshold}", str(DEFAULT_EXACT_SEARCH_THRESHOLD))
        .replace("{dimension}", str(DEFAULT_DIMENSION))
    )


def write_default_config(path: Path, force: bool = False) -> bool:
    """Write the default file; returns ``False`` when one exists and ``force`` is off."""
    if path.exists() and not force:
        return False
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_default_config(), encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot write {path}: {exc}") from exc
    return True
