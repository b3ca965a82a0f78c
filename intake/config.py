"""Application settings and per-source option models."""

from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

_BYTES_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmg]?)b?\s*$", re.IGNORECASE)
_BYTES_UNITS = {"": 0, "k": 1, "m": 2, "g": 3}

BACKEND_NAMES = ("auto", "opencv", "pillow")


def parse_bytes(value: Union[int, str]) -> int:
    """Convert a byte count such as ``2048``, ``"2048k"`` or ``"2m"`` to bytes (base 1024)."""
    if isinstance(value, bool):
        raise ValueError("Byte size must be an integer or a suffixed string.")
    if isinstance(value, int):
        if value < 0:
            raise ValueError("Byte size must not be negative.")
        return value

    match = _BYTES_PATTERN.match(value)
    if match is None:
        raise ValueError(f"Invalid byte size '{value}', expected e.g. 2048, 2048k or 2m.")

    number, unit = match.groups()
    return int(float(number) * 1024 ** _BYTES_UNITS[unit.lower()])


@lru_cache(maxsize=64)
def allow_pattern(rule: str) -> Optional[re.Pattern]:
    """Compile a ``~pattern~flags`` allow rule; other rules return None."""
    rule = rule.strip()
    if len(rule) < 2 or not rule.startswith("~"):
        return None

    end = rule.rfind("~")
    if end > 0:
        pattern, flag_chars = rule[1:end], rule[end + 1 :]
    else:
        pattern, flag_chars = rule[1:], ""
    flags = re.IGNORECASE if "i" in flag_chars else 0
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        raise ValueError(f"Invalid allow pattern '{rule}': {exc}") from exc


class SourceOptions(BaseModel):
    """Immutable intake options; unknown keys are ignored, camelCase keys accepted."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    allowed_mimes: str = Field(default="*", description="'*', comma list or ~regex~.")
    allowed_extensions: str = Field(default="*", description="'*', comma list or ~regex~.")
    allow_empty_extension: bool = True
    max_file_size: Optional[Union[int, str]] = Field(
        default=None,
        description="Maximum source size, e.g. 2048, '2048k' or '2m'.",
    )
    clear: bool = Field(default=True, description="Free image handles on clear().")
    clear_source: bool = Field(default=False, description="Delete the source file on clear().")
    overwrite: bool = False
    slug: bool = True
    slug_lower: bool = True
    hash_mode: Optional[Literal["rand", "name", "file"]] = Field(default=None, alias="hash")
    hash_length: Literal[8, 16, 32, 40] = 32
    directory: Optional[str] = Field(
        default=None,
        description="Default target directory; '@tmp' resolves to the system temp dir.",
    )
    mode: Optional[int] = Field(default=None, description="Permission bits for written targets.")

    @field_validator("allowed_mimes", "allowed_extensions")
    @classmethod
    def _validate_allow_list(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Allow-lists must not be empty; use '*' to allow everything.")
        allow_pattern(value)
        return value

    @field_validator("max_file_size")
    @classmethod
    def _validate_max_file_size(cls, value: Optional[Union[int, str]]) -> Optional[Union[int, str]]:
        if value is None or value == "" or value == 0:
            return None
        parse_bytes(value)
        return value

    @property
    def max_file_size_bytes(self) -> Optional[int]:
        if self.max_file_size is None:
            return None
        return parse_bytes(self.max_file_size)

    def merged(self, **overrides: Any) -> "SourceOptions":
        """Return a validated copy with the given fields replaced."""
        data = self.model_dump(by_alias=False)
        data.update(overrides)
        return type(self).model_validate(data)


class ImageOptions(SourceOptions):
    """Intake options plus encoder and backend settings for images."""

    jpeg_quality: int = Field(default=-1, ge=-1, le=100, description="-1 uses the backend default.")
    webp_quality: int = Field(default=-1, ge=-1, le=100, description="-1 uses the backend default.")
    png_compression: int = Field(default=-1, ge=-1, le=9)
    png_filters: int = Field(default=-1, ge=-1, description="Raster backend PNG strategy.")
    backend: Literal["auto", "opencv", "pillow"] = "auto"
    strip_metadata: bool = False
    keep_icc_profile: bool = True
    background: str = Field(default="none", description="'none', 'black', 'white' or a color.")

    @field_validator("backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("background")
    @classmethod
    def _normalize_background(cls, value: str) -> str:
        return value.strip().lower() or "none"


class Settings(BaseSettings):
    """Pydantic settings sourced from environment variables."""

    intake_storage_dir: Path = Field(default=Path("./data/uploads"))
    intake_allowed_mimes: str = Field(default="image/jpeg,image/png,image/gif,image/webp")
    intake_allowed_extensions: str = Field(default="jpg,jpeg,png,gif,webp")
    intake_max_file_size: str = Field(
        default="10m",
        description="Largest accepted upload, e.g. '512k' or '10m'.",
    )
    intake_overwrite: bool = Field(default=False)
    intake_slug: bool = Field(default=True)
    intake_image_backend: str = Field(
        default="auto",
        description="Image backend: 'auto', 'opencv' or 'pillow'.",
    )
    intake_jpeg_quality: int = Field(default=-1, ge=-1, le=100)
    intake_webp_quality: int = Field(default=-1, ge=-1, le=100)
    intake_background: str = Field(default="none")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
    )

    @field_validator("intake_image_backend")
    @classmethod
    def _validate_backend(cls, value: str) -> str:
        value_lower = value.strip().lower()
        if value_lower not in BACKEND_NAMES:
            raise ValueError("INTAKE_IMAGE_BACKEND must be one of 'auto', 'opencv' or 'pillow'")
        return value_lower

    @field_validator("intake_max_file_size")
    @classmethod
    def _validate_max_file_size(cls, value: str) -> str:
        parse_bytes(value)
        return value

    def source_options(self, **overrides: Any) -> SourceOptions:
        """Build file intake options from the configured defaults."""
        return SourceOptions(**{**self._common_options(), **overrides})

    def image_options(self, **overrides: Any) -> ImageOptions:
        """Build image intake options from the configured defaults."""
        values = {
            **self._common_options(),
            "backend": self.intake_image_backend,
            "jpeg_quality": self.intake_jpeg_quality,
            "webp_quality": self.intake_webp_quality,
            "background": self.intake_background,
        }
        return ImageOptions(**{**values, **overrides})

    def _common_options(self) -> dict[str, Any]:
        return {
            "allowed_mimes": self.intake_allowed_mimes,
            "allowed_extensions": self.intake_allowed_extensions,
            "max_file_size": self.intake_max_file_size,
            "overwrite": self.intake_overwrite,
            "slug": self.intake_slug,
            "directory": str(self.intake_storage_dir),
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    settings = Settings()
    settings.intake_storage_dir.mkdir(parents=True, exist_ok=True)
    return settings
