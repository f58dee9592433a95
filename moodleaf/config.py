"""
Configuration management for moodleaf stores.

The configuration is stored as a TOML file in the store directory.
It specifies the pipeline timing parameters and which AI providers to use.
Environment variables override values read from the file.
"""

import os
import re
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import tomli_w

from .types import format_timestamp, utc_now


CONFIG_FILENAME = "moodleaf.toml"
CONFIG_VERSION = 1
DATABASE_FILENAME = "moodleaf.db"

# Six-field cron with seconds, restricted to "every N seconds"
_EVERY_N_SECONDS = re.compile(r"^\*/(\d+)(\s+\*){5}$")


def parse_interval(value: Any) -> float:
    """
    Convert a poll setting to an interval in seconds.

    Accepts a positive number of seconds, or a cron expression of the
    form "*/N * * * * *" (every N seconds).

    Raises:
        ValueError: For anything else
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid poll interval: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        match = _EVERY_N_SECONDS.match(text)
        if match:
            seconds = float(match.group(1))
        else:
            try:
                seconds = float(text)
            except ValueError:
                raise ValueError(
                    f"Unsupported poll schedule: {value!r}. "
                    "Use seconds or '*/N * * * * *'."
                ) from None
    if seconds <= 0:
        raise ValueError(f"Poll interval must be positive: {value!r}")
    return seconds


@dataclass
class ProviderConfig:
    """Configuration for a single AI provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True


@dataclass
class PipelineConfig:
    """Timing and sizing of the enrichment pipeline."""
    debounce_seconds: float = 5.0
    mood_poll: str = "*/3 * * * * *"
    quote_poll: str = "*/30 * * * * *"
    max_retries: int = 5
    backoff_base_seconds: float = 10.0
    backoff_max_seconds: float = 600.0
    backoff_jitter_seconds: float = 1.0
    call_timeout_seconds: float = 30.0
    lease_seconds: float = 300.0
    worker_pool_size: int = 4
    claim_batch_size: int = 10
    quote_batch_size: int = 1
    staleness_hours: float = 24.0
    quote_fan_in: int = 20
    min_body_length: int = 10

    @property
    def mood_interval(self) -> float:
        return parse_interval(self.mood_poll)

    @property
    def quote_interval(self) -> float:
        return parse_interval(self.quote_poll)


# Declared type of each setting; file and environment values are converted to it
_PIPELINE_TYPES = {f.name: type(f.default) for f in fields(PipelineConfig)}


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: format_timestamp(utc_now()))

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    primary: ProviderConfig = field(default_factory=lambda: ProviderConfig("openrouter"))
    fallback: ProviderConfig = field(
        default_factory=lambda: ProviderConfig("chatanywhere", enabled=False)
    )

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        """Path to the SQLite database shared by all stores."""
        return self.path / DATABASE_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory: MOODLEAF_STORE_PATH or ~/.moodleaf."""
    env_path = os.environ.get("MOODLEAF_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / ".moodleaf"


def detect_default_providers() -> dict[str, ProviderConfig]:
    """
    Pick default providers from the API keys present in the environment.

    Priority for the primary provider:
    1. OpenRouter (OPENROUTER_API_KEY)
    2. OpenAI (OPENAI_API_KEY)
    3. Anthropic (ANTHROPIC_API_KEY)
    4. Ollama (local, no key)

    The OpenAI-compatible fallback is enabled only when its key is set.
    """
    providers = {}

    if os.environ.get("OPENROUTER_API_KEY"):
        providers["primary"] = ProviderConfig("openrouter")
    elif os.environ.get("OPENAI_API_KEY"):
        providers["primary"] = ProviderConfig("openai")
    elif os.environ.get("ANTHROPIC_API_KEY"):
        providers["primary"] = ProviderConfig("anthropic")
    else:
        providers["primary"] = ProviderConfig("ollama")

    providers["fallback"] = ProviderConfig(
        "chatanywhere",
        enabled=bool(os.environ.get("MOODLEAF_FALLBACK_API_KEY")),
    )
    return providers


def _coerce_setting(name: str, value: Any, source: str) -> Any:
    """Convert a pipeline setting to the type its default declares."""
    kind = _PIPELINE_TYPES[name]
    try:
        if isinstance(value, bool):
            raise TypeError(name)
        if kind is int and isinstance(value, float) and not value.is_integer():
            raise ValueError(name)
        return kind(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {source}: {value!r}") from None


def _apply_env_overrides(pipeline: PipelineConfig) -> None:
    """Override pipeline settings from MOODLEAF_<FIELD> environment variables."""
    for name in _PIPELINE_TYPES:
        env_name = f"MOODLEAF_{name.upper()}"
        raw = os.environ.get(env_name)
        if raw is not None:
            setattr(pipeline, name, _coerce_setting(name, raw, env_name))


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with auto-detected defaults."""
    providers = detect_default_providers()
    return StoreConfig(
        path=store_path,
        primary=providers["primary"],
        fallback=providers["fallback"],
    )


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    def parse_provider(section: dict, default_name: str) -> ProviderConfig:
        return ProviderConfig(
            name=section.get("name", default_name),
            params={k: v for k, v in section.items() if k not in ("name", "enabled")},
            enabled=bool(section.get("enabled", True)),
        )

    known = {f.name for f in fields(PipelineConfig)}
    pipeline_data = data.get("pipeline", {})
    unknown = set(pipeline_data) - known
    if unknown:
        raise ValueError(f"Unknown [pipeline] settings: {', '.join(sorted(unknown))}")
    pipeline = PipelineConfig(**{
        name: _coerce_setting(name, value, f"[pipeline] {name}")
        for name, value in pipeline_data.items()
    })

    # Validate poll schedules early rather than at scheduler start
    parse_interval(pipeline.mood_poll)
    parse_interval(pipeline.quote_poll)

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        pipeline=pipeline,
        primary=parse_provider(data.get("primary", {}), "openrouter"),
        fallback=parse_provider(
            data.get("fallback", {"name": "chatanywhere", "enabled": False}),
            "chatanywhere",
        ),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d: dict[str, Any] = {"name": p.name, "enabled": p.enabled}
        d.update(p.params)
        return d

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "pipeline": {f.name: getattr(config.pipeline, f.name) for f in fields(PipelineConfig)},
        "primary": provider_to_dict(config.primary),
        "fallback": provider_to_dict(config.fallback),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management. Environment
    overrides are applied after loading and are never written back.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        config = load_config(store_path)
    else:
        config = create_default_config(store_path)
        save_config(config)

    _apply_env_overrides(config.pipeline)
    return config
