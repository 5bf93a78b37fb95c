"""Pydantic models for application configuration."""

from typing import List, Literal

from pydantic import BaseModel, Field, field_validator

from .queue.models import SafetySetting

DEFAULT_IMAGE_MODEL = "gemini-3-pro-image-preview"
DEFAULT_VIDEO_MODEL = "veo-3.0-generate-001"

VIDEO_MODELS = (
    "veo-3.1-generate-preview",
    "veo-3.1-fast-generate-preview",
    "veo-3.0-generate-001",
    "veo-3.0-fast-generate-001",
)

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_CIVIC_INTEGRITY",
)


def default_safety_settings() -> List[SafetySetting]:
    return [SafetySetting(category=c, threshold="BLOCK_LOW_AND_ABOVE") for c in HARM_CATEGORIES]


class RemoteConfig(BaseModel):
    """Proxy connection settings."""

    base_url: str = Field(default="http://localhost:3001", description="Proxy root URL")
    timeout_s: float = Field(default=60.0, gt=0.0, description="Per-request HTTP timeout in seconds")

    @field_validator("base_url")
    @classmethod
    def check_scheme(cls, v: str) -> str:
        """Require an http(s) URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must start with http:// or https:// (got {v!r})")
        return v.rstrip("/")


class StorageConfig(BaseModel):
    """Durable record store settings."""

    db_path: str = Field(default="nano_studio.db", description="SQLite database file")
    key_prefix: str = Field(default="nano-banana", min_length=1, description="Record key prefix")
    schema_version: str = Field(
        default="1.0", min_length=1, description="Key version segment (bumping orphans old records)"
    )


class PollingConfig(BaseModel):
    """Background refresh settings."""

    interval_s: float = Field(default=30.0, gt=0.0, description="Seconds between queue refreshes")


class GenerationConfig(BaseModel):
    """Defaults applied to remote jobs."""

    image_model: str = Field(default=DEFAULT_IMAGE_MODEL, description="Image model when a request names none")
    video_model: str = Field(default=DEFAULT_VIDEO_MODEL, description="Video model when a request names none")
    safety_settings: List[SafetySetting] = Field(
        default_factory=default_safety_settings, description="Safety settings sent with image jobs"
    )


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_format: bool = Field(default=False, alias="json", description="Emit single-line JSON logs")

    class Config:
        """Pydantic configuration."""

        populate_by_name = True

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class StudioConfig(BaseModel):
    """Complete application configuration with validation."""

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "StudioConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "StudioConfig":
        """Apply CLI overrides and return new config instance.

        ``None`` values mean "flag not given" and are ignored.
        """
        config_dict = self.model_dump(by_alias=True)

        if cli_args.get("db") is not None:
            config_dict["storage"]["db_path"] = cli_args["db"]
        if cli_args.get("base_url") is not None:
            config_dict["remote"]["base_url"] = cli_args["base_url"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]
        if cli_args.get("interval") is not None:
            config_dict["polling"]["interval_s"] = cli_args["interval"]

        return StudioConfig.from_dict(config_dict)
