"""Recipe install pipeline: fetch, verify, extract, place."""

from __future__ import annotations

import hashlib
import io
import logging
import lzma
import os
import shutil
import tarfile
import tempfile
import zipfile
import zlib
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path, PurePosixPath

import httpx

from binrecipe.config import InstallStep, Recipe
from binrecipe.errors import (
    ExtractionError,
    InstallError,
    IntegrityError,
    NetworkError,
    PlacementError,
)
from binrecipe.logging_utils import build_run_id, log_event, reset_run_id, set_run_id

logger = logging.getLogger(__name__)

INSTALL_ROOT_ENV = "BINRECIPE_INSTALL_ROOT"
EXTRACT_PREFIX = "binrecipe-extract-"
_TAR_MODES = {
    "tar.gz": "r:gz",
    "tar.xz": "r:xz",
    "tar.bz2": "r:bz2",
    "tar": "r:",
}
_ARCHIVE_READ_ERRORS = (OSError, EOFError, zlib.error, lzma.LZMAError)
_ZIP_ENCRYPTED = 0x1


def default_install_root() -> Path:
    """Return default install root path."""
    return Path.home() / ".local"


def resolve_install_root(install_root: Path | None = None) -> Path:
    """Resolve install root from argument or environment."""
    if install_root is not None:
        return install_root.expanduser()
    env_value = os.environ.get(INSTALL_ROOT_ENV)
    if env_value:
        return Path(env_value).expanduser()
    return default_install_root()


def sha256_hex(data: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def file_sha256(path: Path, *, chunk_size: int = 1024 * 1024) -> str:
    """Return the lowercase hex SHA-256 digest of a file on disk."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def fetch(url: str, *, client: httpx.Client | None = None) -> bytes:
    """Download ``url`` in a single attempt and return the response body."""
    http_client = client if client is not None else httpx.Client()
    try:
        response = http_client.get(url, follow_redirects=True)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise NetworkError(f"failed to download {url}: {exc}") from exc
    finally:
        if client is None:
            http_client.close()

    if response.url.scheme != "https":
        raise NetworkError(f"failed to download {url}: redirected to insecure {response.url}")
    if not response.is_success:
        raise NetworkError(f"failed to download {url}: HTTP {response.status_code}")
    return response.content


def verify(data: bytes, expected_sha256: str) -> bytes:
    """Return ``data`` if its SHA-256 matches ``expected_sha256``."""
    actual = sha256_hex(data)
    expected = expected_sha256.strip().lower()
    if actual != expected:
        raise IntegrityError(f"checksum mismatch: got {actual}, want {expected}")
    return data


def _member_path(root: Path, name: str) -> Path:
    member = PurePosixPath(name)
    if member.is_absolute() or ".." in member.parts:
        raise ExtractionError(f"archive member escapes extraction directory: {name}")
    return root.joinpath(*member.parts)


def _unpack_tar(data: bytes, archive_format: str, target: Path) -> None:
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode=_TAR_MODES[archive_format]) as archive:
            archive.extractall(target, filter="data")
    except tarfile.FilterError as exc:
        raise ExtractionError(f"unsafe {archive_format} archive: {exc}") from exc
    except (tarfile.TarError, *_ARCHIVE_READ_ERRORS) as exc:
        raise ExtractionError(f"malformed {archive_format} archive: {exc}") from exc


def _unpack_zip(data: bytes, target: Path) -> None:
    # zipfile.extractall drops permission bits, so members are written one by one.
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            for member in archive.infolist():
                destination = _member_path(target, member.filename)
                if member.is_dir():
                    destination.mkdir(parents=True, exist_ok=True)
                    continue
                if member.flag_bits & _ZIP_ENCRYPTED:
                    raise ExtractionError(
                        f"encrypted zip member is not supported: {member.filename}"
                    )
                destination.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(member) as source, destination.open("wb") as handle:
                    shutil.copyfileobj(source, handle)
                mode = (member.external_attr >> 16) & 0o755
                if mode:
                    destination.chmod(mode)
    except (
        zipfile.BadZipFile,
        zipfile.LargeZipFile,
        NotImplementedError,
        *_ARCHIVE_READ_ERRORS,
    ) as exc:
        raise ExtractionError(f"malformed zip archive: {exc}") from exc


@contextmanager
def extract(
    data: bytes,
    archive_format: str,
    *,
    work_dir: Path | None = None,
) -> Iterator[Path]:
    """Yield a temporary directory holding the unpacked archive."""
    if archive_format != "zip" and archive_format not in _TAR_MODES:
        raise ExtractionError(f"unsupported archive format: {archive_format}")

    try:
        scratch = tempfile.TemporaryDirectory(prefix=EXTRACT_PREFIX, dir=work_dir)
    except OSError as exc:
        raise ExtractionError(f"cannot create extraction directory: {exc}") from exc

    with scratch as tmp_dir:
        target = Path(tmp_dir)
        if archive_format == "zip":
            _unpack_zip(data, target)
        else:
            _unpack_tar(data, archive_format, target)
        yield target


def _plan_placements(
    tree: Path,
    steps: Sequence[InstallStep],
    install_root: Path,
) -> list[tuple[Path, Path]]:
    plan: list[tuple[Path, Path]] = []
    planned: dict[Path, Path] = {}
    for step in steps:
        matches = sorted(path for path in tree.glob(step.source) if path.is_file())
        if not matches:
            raise PlacementError(f"'{step.source}' was not found in the archive")
        destination_dir = install_root / step.destination
        for match in matches:
            destination = destination_dir / match.name
            if destination in planned:
                first = planned[destination].relative_to(tree)
                second = match.relative_to(tree)
                raise PlacementError(
                    f"'{first}' and '{second}' would both be installed as {destination}"
                )
            planned[destination] = match
            plan.append((match, destination))
    return plan


def _stage_copy(source: Path, destination: Path) -> Path:
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{destination.name}.",
        suffix=".partial",
        dir=destination.parent,
    )
    staged = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle, source.open("rb") as src:
            shutil.copyfileobj(src, handle)
        shutil.copymode(source, staged)
    except OSError:
        staged.unlink(missing_ok=True)
        raise
    return staged


def _discard_staged(staged: Sequence[tuple[Path, Path]]) -> None:
    for staged_path, _ in staged:
        try:
            staged_path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove staged file %s", staged_path)


def install(
    tree: Path,
    steps: Sequence[InstallStep],
    install_root: Path,
) -> list[Path]:
    """Copy step sources from ``tree`` into ``install_root`` and return placed paths.

    Every source is resolved before anything is written. Files are staged
    next to their destination and moved into place with ``os.replace``.
    """
    plan = _plan_placements(tree, steps, install_root)

    staged: list[tuple[Path, Path]] = []
    try:
        for source, destination in plan:
            staged.append((_stage_copy(source, destination), destination))
    except OSError as exc:
        _discard_staged(staged)
        raise PlacementError(f"cannot write into {install_root}: {exc}") from exc

    installed: list[Path] = []
    try:
        for staged_path, destination in staged:
            os.replace(staged_path, destination)
            installed.append(destination)
    except OSError as exc:
        _discard_staged(staged[len(installed) :])
        raise PlacementError(f"cannot place {destination}: {exc}") from exc
    return installed


def install_recipe(
    recipe: Recipe,
    *,
    install_root: Path,
    client: httpx.Client | None = None,
    work_dir: Path | None = None,
) -> list[Path]:
    """Run fetch, verify, extract, and place for one recipe."""
    token = set_run_id(build_run_id())
    try:
        log_event(
            logger,
            logging.INFO,
            "install.started",
            recipe=recipe.name,
            version=recipe.version,
            url=recipe.url,
        )
        try:
            data = fetch(recipe.url, client=client)
            log_event(logger, logging.INFO, "install.fetched", size_bytes=len(data))

            verify(data, recipe.sha256)
            log_event(logger, logging.INFO, "install.verified", sha256=recipe.sha256)

            with extract(data, recipe.archive_format, work_dir=work_dir) as tree:
                log_event(
                    logger,
                    logging.INFO,
                    "install.extracted",
                    archive_format=recipe.archive_format,
                )
                installed = install(tree, recipe.install_steps, install_root)
        except InstallError as exc:
            log_event(
                logger,
                logging.WARNING,
                "install.failed",
                recipe=recipe.name,
                stage=exc.stage,
                error=str(exc),
            )
            raise

        for path in installed:
            log_event(logger, logging.INFO, "install.placed", path=str(path))
        log_event(
            logger,
            logging.INFO,
            "install.completed",
            recipe=recipe.name,
            version=recipe.version,
            file_count=len(installed),
        )
        return installed
    finally:
        reset_run_id(token)
