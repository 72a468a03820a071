"""Settings via pydantic-settings with HELM_ env prefix.

Credential fields use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) that other Anthropic
tooling uses, so one .env file works for all of them.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HELM_", env_file=".env", extra="ignore")

    log_level: str = "info"

    # Transport
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    background_model: str = "claude-haiku-4-5-20251001"  # summaries + next-speaker checks
    max_tokens: int = 8192
    system_prompt: str = ""  # replaces the built-in core prompt when set
    user_memory: str = ""

    # Turn limits
    max_turns: int = 100  # exchanges per top-level request
    max_session_turns: int = 0  # 0 = unlimited
    session_token_limit: int = 0  # 0 = unlimited
    skip_next_speaker_check: bool = False

    # Compression
    compression_token_threshold: int = 60_000
    compression_preserve_fraction: float = 0.3
    tokens_per_char: float = 0.25

    # Core prompt reinforcement
    min_turns_between_injection: int = 5
    fallback_injection_interval: int = 25
    consecutive_model_turns_threshold: int = 4
    complexity_threshold: int = 50
    error_threshold: int = 2
    tool_usage_spike_threshold: int = 8

    # Complexity score weights
    complexity_chars_per_point: int = 100
    complexity_keyword_weight: int = 5
    complexity_tool_weight: int = 2
    complexity_delegation_weight: int = 3

    # Mode + capabilities
    approval_mode: Literal["default", "plan"] = "default"
    plan_only: bool = False
    subagents: list[str] = Field(default_factory=list)
    delegation_tool_name: str = "task"
    memory_file: str = ".helm/memory.md"

    # Tools
    workspace_dir: str = "."
    tools_enabled: bool = True

    # Recording
    record_dir: str = ""  # empty = recording disabled

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if not 0.0 < self.compression_preserve_fraction < 1.0:
            raise ValueError(
                f"compression_preserve_fraction ({self.compression_preserve_fraction}) "
                "must be between 0 and 1 (exclusive)"
            )
        if self.tokens_per_char <= 0:
            raise ValueError("tokens_per_char must be > 0")
        if self.max_turns < 0 or self.max_session_turns < 0 or self.session_token_limit < 0:
            raise ValueError("turn and token limits must be >= 0")
        if self.min_turns_between_injection > self.fallback_injection_interval:
            raise ValueError(
                f"min_turns_between_injection ({self.min_turns_between_injection}) must be <= "
                f"fallback_injection_interval ({self.fallback_injection_interval})"
            )
        return self
