"""
Schema definitions for LogTrains.

This module defines the Pydantic models used throughout LogTrains:
- Entry/EntryRef: Captured command output and its cheap-to-list metadata
- Budget: The token allowance of a single generation request
- RetentionPolicy: How much history the Entry Store keeps
- ModelConfig: Which model the Inference Gateway should run
- Settings: The complete user configuration, loadable from YAML

Design Decisions:
    - Records are immutable (frozen=True), matching the append-only store
    - Unknown keys are rejected so typos in config files surface early
    - Defaults assume a 4096-token context with 512 tokens kept for the answer
"""

import os
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from logtrains.errors import ConfigError

# Context length of the default models and the share kept for the answer
DEFAULT_CONTEXT_TOKENS = 4096
DEFAULT_GENERATION_TOKENS = 512
DEFAULT_MAX_TOKENS = DEFAULT_CONTEXT_TOKENS - DEFAULT_GENERATION_TOKENS
DEFAULT_HEAD_FRACTION = 0.15
DEFAULT_QUANTIZATION = "q4_K_M"

CONFIG_ENV_VAR = "LOGTRAINS_CONFIG"
HOME_ENV_VAR = "LOGTRAINS_HOME"


def default_config_path() -> Path:
    """Location of the user config file."""
    return Path.home() / ".config" / "logtrains" / "config.yaml"


def default_history_dir() -> Path:
    """Location of the Entry Store directory, honouring $LOGTRAINS_HOME."""
    home = os.environ.get(HOME_ENV_VAR)
    if home:
        return Path(home).expanduser() / "history"
    return Path.home() / ".local" / "share" / "logtrains" / "history"


# =============================================================================
# Enums
# =============================================================================


class ModelPreset(str, Enum):
    """Model size presets understood by the Inference Gateway."""

    TINY = "tiny"
    MEDIUM = "medium"


# Base model tags per preset; the quantization suffix is appended at resolve time
PRESET_MODELS: dict[ModelPreset, str] = {
    ModelPreset.TINY: "tinyllama:1.1b-chat-v1",
    ModelPreset.MEDIUM: "mistral:7b-instruct-v0.2",
}


class TokenCounterKind(str, Enum):
    """Token counting strategies selectable from configuration."""

    CHARS = "chars"
    WORDS = "words"
    TIKTOKEN = "tiktoken"


# =============================================================================
# Entry Models
# =============================================================================


class EntryRef(BaseModel):
    """
    Metadata of a persisted entry, listed without loading its body.

    Attributes:
        identifier: Unique, strictly increasing key defining recency
        captured_at: Wall-clock time of capture
        command_text: The invoked command line, if known
        exit_code: Exit status of the command, if known
        byte_length: Size of the UTF-8 body in bytes
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    identifier: int = Field(..., description="Unique recency key", ge=0)
    captured_at: datetime = Field(..., description="Wall-clock time of capture")
    command_text: str | None = Field(default=None, description="Invoked command line")
    exit_code: int | None = Field(default=None, description="Command exit status")
    byte_length: int = Field(..., description="Size of the body in bytes", ge=0)

    @field_validator("captured_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        return v if v.tzinfo is not None else v.replace(tzinfo=UTC)


class Entry(BaseModel):
    """
    One captured command-output record.

    Entries are immutable once persisted. They are only ever appended
    or removed by retention cleanup.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    identifier: int = Field(..., description="Unique recency key", ge=0)
    captured_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Wall-clock time of capture",
    )
    command_text: str | None = Field(default=None, description="Invoked command line")
    exit_code: int | None = Field(default=None, description="Command exit status")
    body: str = Field(default="", description="Captured output text")

    @field_validator("captured_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        return v if v.tzinfo is not None else v.replace(tzinfo=UTC)

    @property
    def byte_length(self) -> int:
        """Size of the body in UTF-8 bytes."""
        return len(self.body.encode("utf-8"))

    def ref(self) -> EntryRef:
        """Return the listing metadata for this entry."""
        return EntryRef(
            identifier=self.identifier,
            captured_at=self.captured_at,
            command_text=self.command_text,
            exit_code=self.exit_code,
            byte_length=self.byte_length,
        )


# =============================================================================
# Budget and Policy Models
# =============================================================================


class Budget(BaseModel):
    """
    Token allowance of one generation request.

    Attributes:
        max_tokens: Ceiling for the whole request, preamble included
        reserved_for_preamble: Tokens the instructional text consumes
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_tokens: int = Field(
        default=DEFAULT_MAX_TOKENS,
        description="Ceiling for the whole request, preamble included",
        gt=0,
    )
    reserved_for_preamble: int = Field(
        default=0,
        description="Tokens consumed by the fixed preamble",
        ge=0,
    )

    @property
    def usable(self) -> int:
        """Tokens left for captured output."""
        return self.max_tokens - self.reserved_for_preamble

    @classmethod
    def unlimited(cls) -> "Budget":
        """A budget no realistic selection can exceed."""
        return cls(max_tokens=2**62)

    def with_preamble(self, reserved: int) -> "Budget":
        """Return a copy reserving ``reserved`` tokens for the preamble."""
        return self.model_copy(update={"reserved_for_preamble": reserved})


class RetentionPolicy(BaseModel):
    """
    How much history the Entry Store keeps.

    Attributes:
        max_entries: Keep at most this many newest entries (None = no cap)
        max_age_days: Drop entries older than this (None = no age limit)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_entries: int | None = Field(default=500, description="Count ceiling", ge=0)
    max_age_days: float | None = Field(default=30.0, description="Age ceiling in days", gt=0)


class ModelConfig(BaseModel):
    """
    Model configuration handed to the Inference Gateway.

    Attributes:
        preset: Model size preset (tiny or medium)
        quantization: Weight quantization suffix (fixed default)
        model: Explicit engine model tag, overriding the preset
        base_url: Where the inference engine listens
        timeout_seconds: Per-request timeout
        temperature: Sampling temperature
        top_p: Nucleus sampling threshold
        seed: Sampling seed for reproducible answers
        max_new_tokens: Maximum tokens generated for the answer
        context_tokens: Context length requested from the engine
    """

    model_config = ConfigDict(frozen=True, extra="forbid", protected_namespaces=())

    preset: ModelPreset = Field(default=ModelPreset.TINY, description="Model size preset")
    quantization: str = Field(default=DEFAULT_QUANTIZATION, description="Quantization suffix")
    model: str | None = Field(default=None, description="Explicit model tag override")
    base_url: str = Field(default="http://localhost:11434", description="Engine URL")
    timeout_seconds: float = Field(default=300.0, description="Request timeout", gt=0)
    temperature: float = Field(default=0.7, description="Sampling temperature", ge=0)
    top_p: float = Field(default=0.9, description="Nucleus sampling threshold", gt=0, le=1)
    seed: int | None = Field(default=299792458, description="Sampling seed")
    max_new_tokens: int = Field(
        default=DEFAULT_GENERATION_TOKENS,
        description="Maximum generated tokens",
        gt=0,
    )
    context_tokens: int = Field(
        default=DEFAULT_CONTEXT_TOKENS,
        description="Context length requested from the engine",
        gt=0,
    )

    def resolved_model(self) -> str:
        """Engine model tag for this configuration."""
        if self.model:
            return self.model
        return f"{PRESET_MODELS[self.preset]}-{self.quantization}"


# =============================================================================
# Settings
# =============================================================================


class Settings(BaseModel):
    """
    Complete LogTrains configuration.

    Attributes:
        history_dir: Entry Store directory
        budget: Token budget for assembled prompts
        head_fraction: Share of the usable budget kept from the oldest text
        include_headers: Prefix each entry with its command and timestamp
        token_counter: Token counting strategy
        retention: History retention policy
        model: Inference model configuration
        prompt_template: Optional template file with a {{LOG_TEXT}} placeholder
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    history_dir: Path = Field(
        default_factory=default_history_dir,
        description="Entry Store directory",
    )
    budget: Budget = Field(default_factory=Budget, description="Token budget")
    head_fraction: float = Field(
        default=DEFAULT_HEAD_FRACTION,
        description="Share of the usable budget kept from the beginning",
        ge=0,
        lt=1,
    )
    include_headers: bool = Field(
        default=True,
        description="Prefix each entry with its command and timestamp",
    )
    token_counter: TokenCounterKind = Field(
        default=TokenCounterKind.CHARS,
        description="Token counting strategy",
    )
    retention: RetentionPolicy = Field(
        default_factory=RetentionPolicy,
        description="History retention policy",
    )
    model: ModelConfig = Field(default_factory=ModelConfig, description="Model configuration")
    prompt_template: Path | None = Field(
        default=None,
        description="Template file containing {{LOG_TEXT}}",
    )

    @field_validator("history_dir", "prompt_template")
    @classmethod
    def expand_user(cls, v: Path | None) -> Path | None:
        """Expand ~ in configured paths."""
        return v.expanduser() if v is not None else None


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def _settings_from_data(data: Any, source: str) -> Settings:
    if data is None:
        return Settings()
    if not isinstance(data, dict):
        raise ConfigError(path=source, underlying_error="top level must be a mapping")
    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(path=source, underlying_error=str(e)) from e


def load_settings(path: Path | str) -> Settings:
    """
    Load settings from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated Settings object

    Raises:
        ConfigError: If the file cannot be read or does not match the schema
    """
    path = Path(path)
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(path=str(path), underlying_error=str(e)) from e

    return _settings_from_data(data, str(path))


def load_settings_from_string(content: str) -> Settings:
    """Load settings from a YAML string."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(path="<string>", underlying_error=str(e)) from e
    return _settings_from_data(data, "<string>")


def resolve_settings(path: Path | str | None = None) -> Settings:
    """
    Find and load the active settings.

    Lookup order: explicit path, $LOGTRAINS_CONFIG, the user config file,
    then built-in defaults.
    """
    if path is not None:
        return load_settings(path)

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return load_settings(env_path)

    user_path = default_config_path()
    if user_path.exists():
        return load_settings(user_path)

    return Settings()
