"""cronbot configuration schema — YAML + Pydantic + env override."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class ProviderConfig(BaseModel):
    """Single LLM provider."""

    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """LLM providers used by the default engine (LiteLLM multi-provider)."""

    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    groq: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)


class OwnerConfig(BaseModel):
    """Default user for API calls without an X-User-Id header."""

    username: str = "default"
    name: str = ""


class StorageConfig(BaseModel):
    """Where job definitions, run records and job workspaces live.

    Empty directory values resolve under ``root``.
    """

    root: str = "~/.cronbot"
    agents_dir: str = ""
    runs_dir: str = ""
    workspaces_dir: str = ""
    tool_groups_path: str = "tool_groups.yaml"


class EngineConfig(BaseModel):
    """Default LiteLLM engine settings."""

    model: str = "anthropic/claude-sonnet-4-5-20250929"
    temperature: float = 0.7
    max_tokens: int = 4096


class ExecutorConfig(BaseModel):
    """Batch execution limits."""

    timeout_s: float = 300.0
    max_tool_calls: int = 60
    max_retries: int = 3
    backoff_base_s: float = 2.0


class SchedulerConfig(BaseModel):
    enabled: bool = True
    misfire_grace_time_s: int = 60
    # always | never | skip_frequent (jobs firing more often than
    # catchup_min_interval_s are not caught up)
    catchup: Literal["always", "never", "skip_frequent"] = "skip_frequent"
    catchup_delay_s: float = 2.0
    catchup_min_interval_s: int = 3600
    run_retention_days: int = 30


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings — env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        CRONBOT_ENGINE__MODEL=openai/gpt-4o
        CRONBOT_STORAGE__ROOT=/var/lib/cronbot
        CRONBOT_PROVIDERS__ANTHROPIC__API_KEY=sk-...
    """

    model_config = SettingsConfigDict(
        env_prefix="CRONBOT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"
    owner: OwnerConfig = Field(default_factory=OwnerConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # YAML arrives as init kwargs; env must win over it
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    # ── Computed paths ──────────────────────────────────────

    @property
    def root_path(self) -> Path:
        return Path(self.storage.root).expanduser()

    @property
    def agents_path(self) -> Path:
        return self._resolve(self.storage.agents_dir, "agents")

    @property
    def runs_path(self) -> Path:
        return self._resolve(self.storage.runs_dir, "agent-runs")

    @property
    def workspaces_path(self) -> Path:
        return self._resolve(self.storage.workspaces_dir, "agent-workspaces")

    @property
    def tool_groups_path(self) -> Path:
        return Path(self.storage.tool_groups_path).expanduser()

    def _resolve(self, value: str, default_name: str) -> Path:
        if value:
            return Path(value).expanduser()
        return self.root_path / default_name

    # ── Provider helpers ────────────────────────────────────

    def get_api_key(self, model: str | None = None) -> str | None:
        """Get API key for model name. Falls back to first available."""
        model_name = (model or self.engine.model).lower()

        keyword_map: dict[str, ProviderConfig] = {
            "anthropic": self.providers.anthropic,
            "claude": self.providers.anthropic,
            "openai": self.providers.openai,
            "gpt": self.providers.openai,
            "openrouter": self.providers.openrouter,
            "deepseek": self.providers.deepseek,
            "groq": self.providers.groq,
            "gemini": self.providers.gemini,
        }
        for keyword, provider in keyword_map.items():
            if keyword in model_name and provider.api_key:
                return provider.api_key

        for name in ProvidersConfig.model_fields:
            p = getattr(self.providers, name)
            if isinstance(p, ProviderConfig) and p.api_key:
                return p.api_key
        return None

    def get_api_base(self, model: str | None = None) -> str | None:
        """Get API base URL for model name."""
        model_name = (model or self.engine.model).lower()
        if "openrouter" in model_name:
            return self.providers.openrouter.api_base or "https://openrouter.ai/api/v1"
        for name in ProvidersConfig.model_fields:
            p = getattr(self.providers, name)
            if isinstance(p, ProviderConfig) and name in model_name and p.api_base:
                return p.api_base
        return None
