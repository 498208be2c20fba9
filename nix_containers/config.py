"""Configuration settings for nix_containers.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Variables are read without a prefix (``IMAGE``, ``PLATFORMS``,
``BUILD_CONTEXT``, ``PUSH_IMAGE``) because those are the names Skaffold
sets for custom builders.
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from nix_containers.errors import InvalidReferenceError
from nix_containers.types import ImageReference, Platform

_LOG_LEVEL_ALIASES = {
    "": "INFO",
    "warn": "WARNING",
    "err": "ERROR",
}

_TRUE_VALUES = ("1", "true", "yes", "on")


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables and an optional ``.env``
    file. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Build inputs
    image: str = Field(
        default="",
        description="Destination image reference (e.g., ghcr.io/you/app:tag)",
    )
    platforms: str = Field(
        default="",
        description="Comma-separated target platforms os/arch (host platform if empty)",
    )
    build_context: str = Field(
        default="",
        description="Path to the flake build context",
    )

    # Operational modes
    push_image: bool = Field(
        default=False,
        description="Push built images to the registry",
    )
    accept_flake_config: bool = Field(
        default=False,
        description="Accept nix flake config during build",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    nix_binary: str = Field(
        default="nix",
        description="Name or path of the nix executable",
    )

    # Timeouts (in seconds)
    build_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout for the whole build invocation (no timeout if unset)",
    )

    @field_validator("push_image", "accept_flake_config", mode="before")
    @classmethod
    def _parse_flag(cls, value: object) -> object:
        # Anything but an explicit yes is off, including the empty string.
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_VALUES
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _LOG_LEVEL_ALIASES.get(lowered, lowered.upper())
        return value

    def platform_list(self) -> list[Platform]:
        """Return the configured platforms, defaulting to the host platform."""
        return parse_platforms(self.platforms)

    def image_reference(self) -> ImageReference:
        """Return the destination image as a tag reference.

        Raises:
            InvalidReferenceError: If the image is unset, invalid or a digest.
        """
        if not self.image:
            raise InvalidReferenceError(
                "invalid image reference: image must be set via --image or IMAGE"
            )
        ref = ImageReference.parse(self.image)
        if ref.digest:
            raise InvalidReferenceError(
                f"invalid image reference: {self.image} must be a tag, not a digest"
            )
        return ref


def parse_platforms(value: str) -> list[Platform]:
    """Parse a comma-separated platform list.

    Blank entries are ignored and repeated platforms are dropped, keeping the
    first occurrence. An empty list means the host platform.

    Args:
        value: e.g. ``linux/amd64,linux/arm64``.

    Returns:
        Non-empty list of platforms.

    Raises:
        InvalidPlatformError: If an entry is not ``os/arch``.
    """
    platforms: list[Platform] = []
    for item in value.split(","):
        if not item.strip():
            continue
        platform = Platform.parse(item)
        if platform not in platforms:
            platforms.append(platform)
    if not platforms:
        platforms.append(Platform.host())
    return platforms


def get_settings(**overrides: object) -> Settings:
    """Get the application settings.

    Args:
        **overrides: Values taking precedence over the environment (CLI flags).
            ``None`` values are ignored.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "parse_platforms", "print_settings_json"]
