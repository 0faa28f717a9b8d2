"""Error taxonomy for the recipe install pipeline."""

from __future__ import annotations


class InstallError(Exception):
    """Base class for terminal install failures."""

    exit_code = 1
    stage = "install"


class RecipeError(InstallError):
    """Recipe file is missing, unreadable, or invalid."""

    exit_code = 2
    stage = "recipe"


class NetworkError(InstallError):
    """Archive download failed."""

    exit_code = 3
    stage = "fetch"


class IntegrityError(InstallError):
    """Archive content hash does not match the recipe."""

    exit_code = 4
    stage = "verify"


class ExtractionError(InstallError):
    """Archive is malformed or unsafe to unpack."""

    exit_code = 5
    stage = "extract"


class PlacementError(InstallError):
    """Extracted file could not be copied into the install root."""

    exit_code = 6
    stage = "place"
