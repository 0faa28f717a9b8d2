"""Configuration models for declarative install recipes."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path, PurePosixPath
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from binrecipe.errors import RecipeError

ArchiveFormat = Literal["tar.gz", "tar.xz", "tar.bz2", "tar", "zip"]
DEFAULT_DESTINATION = "bin"

# Longest suffixes first so ".tar.gz" wins over ".gz"-style partial matches.
ARCHIVE_SUFFIXES: tuple[tuple[str, ArchiveFormat], ...] = (
    (".tar.gz", "tar.gz"),
    (".tar.xz", "tar.xz"),
    (".tar.bz2", "tar.bz2"),
    (".tgz", "tar.gz"),
    (".txz", "tar.xz"),
    (".tbz2", "tar.bz2"),
    (".tar", "tar"),
    (".zip", "zip"),
)


def detect_archive_format(url: str) -> ArchiveFormat:
    """Return the archive format implied by the URL path suffix."""
    path = urlparse(url).path.lower()
    for suffix, archive_format in ARCHIVE_SUFFIXES:
        if path.endswith(suffix):
            return archive_format
    supported = ", ".join(suffix for suffix, _ in ARCHIVE_SUFFIXES)
    raise ValueError(f"unsupported archive type for '{url}' (expected one of: {supported})")


def _relative_path(value: str, *, field_name: str) -> str:
    cleaned = value.strip()
    path = PurePosixPath(cleaned)
    if path.is_absolute() or ".." in path.parts:
        raise ValueError(f"{field_name} must be a relative path without '..': {value!r}")
    return cleaned


class InstallStep(BaseModel):
    """Copy ``source`` from the extracted archive into ``destination``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    source: str = Field(min_length=1)
    destination: str = DEFAULT_DESTINATION

    @field_validator("source", "destination")
    @classmethod
    def validate_relative(cls, value: str, info: ValidationInfo) -> str:
        """Keep step paths inside the archive and install root."""
        cleaned = _relative_path(value, field_name=info.field_name)
        if info.field_name == "source" and not PurePosixPath(cleaned).parts:
            raise ValueError(f"source must name a file or pattern inside the archive: {value!r}")
        return cleaned


class Recipe(BaseModel):
    """Top-level recipe loaded from a YAML recipe file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(pattern=r"^[a-z0-9][a-z0-9._+-]*$")
    description: str = Field(
        min_length=1,
        validation_alias=AliasChoices("description", "desc"),
    )
    homepage: str
    url: str
    version: str = Field(min_length=1)
    sha256: str = Field(pattern=r"^[0-9a-fA-F]{64}$")
    install_steps: tuple[InstallStep, ...] = Field(
        min_length=1,
        validation_alias=AliasChoices("install_steps", "install"),
    )

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, value: Any) -> Any:
        """Accept unquoted numeric YAML versions such as ``1.2``."""
        if isinstance(value, int | float) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("homepage")
    @classmethod
    def validate_homepage(cls, value: str) -> str:
        """Require an absolute http(s) homepage."""
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"homepage must be an http(s) URL: {value!r}")
        return value

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        """Require an https archive URL with a known archive suffix."""
        parsed = urlparse(value)
        if parsed.scheme != "https" or not parsed.netloc:
            raise ValueError(f"url must be an https URL: {value!r}")
        detect_archive_format(value)
        return value

    @field_validator("sha256")
    @classmethod
    def normalize_sha256(cls, value: str) -> str:
        return value.lower()

    @field_validator("install_steps", mode="before")
    @classmethod
    def expand_shorthand_steps(cls, value: Any) -> Any:
        """Expand bare-string steps into ``{source: <string>}`` mappings."""
        if not isinstance(value, list | tuple):
            return value
        return [{"source": item} if isinstance(item, str) else item for item in value]

    @property
    def archive_format(self) -> ArchiveFormat:
        """Archive format derived from the URL suffix."""
        return detect_archive_format(self.url)


def parse_recipe_config(data: Mapping[str, object]) -> Recipe:
    """Validate recipe data into an immutable Recipe."""
    return Recipe.model_validate(data)


def _format_validation_error(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "recipe"
        messages.append(f"{location}: {error['msg']}")
    return "; ".join(messages)


def load_recipe_file(path: Path) -> Recipe:
    """Load and validate a YAML recipe file."""
    if not path.exists():
        raise RecipeError(f"recipe file not found: {path}")
    if not path.is_file():
        raise RecipeError(f"recipe path is not a file: {path}")

    try:
        raw_data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        raise RecipeError(f"cannot read recipe {path}: {exc}") from exc

    if raw_data is None:
        raise RecipeError(f"{path} is empty")
    if not isinstance(raw_data, dict):
        raise RecipeError(f"{path} must contain a YAML mapping")

    recipe_data = {str(key): value for key, value in raw_data.items()}
    try:
        return parse_recipe_config(recipe_data)
    except ValidationError as exc:
        raise RecipeError(f"invalid recipe {path}: {_format_validation_error(exc)}") from exc


def build_recipe_payload(recipe: Recipe) -> dict[str, Any]:
    """Serialize a recipe for CLI output."""
    payload = recipe.model_dump(mode="json")
    payload["archive_format"] = recipe.archive_format
    return payload
