"""Integration tests for the full fetch/verify/extract/place pipeline."""

from __future__ import annotations

import hashlib
import io
import logging
import os
import tarfile
from pathlib import Path

import httpx
import pytest
import yaml
from typer.testing import CliRunner

from binrecipe import cli
from binrecipe.config import Recipe, parse_recipe_config
from binrecipe.errors import ExtractionError, IntegrityError, NetworkError, PlacementError
from binrecipe.installer import install_recipe
from binrecipe.logging_utils import get_run_id

ARCHIVE_URL = (
    "https://github.com/replicatedhq/replicated/releases/download/"
    "v0.31.0/replicated_0.31.0_linux_amd64.tar.gz"
)


def _release_archive(binary: bytes = b"\x7fELF-replicated") -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content, mode in (
            ("replicated", binary, 0o755),
            ("LICENSE", b"MIT\n", 0o644),
            ("README.md", b"# replicated\n", 0o644),
        ):
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = mode
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def _recipe(archive: bytes, **overrides: object) -> Recipe:
    data: dict[str, object] = {
        "name": "replicated",
        "desc": "Package Kubernetes apps and distribute them to customers",
        "homepage": "https://github.com/replicatedhq/replicated",
        "url": ARCHIVE_URL,
        "version": "0.31.0",
        "sha256": hashlib.sha256(archive).hexdigest(),
        "install": [{"source": "replicated", "destination": "bin"}],
    }
    data.update(overrides)
    return parse_recipe_config(data)


def _transport(payload: bytes, status_code: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) != ARCHIVE_URL:
            return httpx.Response(404)
        return httpx.Response(status_code, content=payload)

    return httpx.MockTransport(handler)


def _serving(payload: bytes, status_code: int = 200) -> httpx.Client:
    return httpx.Client(transport=_transport(payload, status_code))


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


def test_install_recipe_places_executable(tmp_path: Path, work_dir: Path) -> None:
    archive = _release_archive()
    root = tmp_path / "root"

    installed = install_recipe(
        _recipe(archive),
        install_root=root,
        client=_serving(archive),
        work_dir=work_dir,
    )

    target = root / "bin" / "replicated"
    assert installed == [target]
    assert target.read_bytes() == b"\x7fELF-replicated"
    assert os.access(target, os.X_OK)
    assert list(work_dir.iterdir()) == []
    assert not (root / "bin" / "LICENSE").exists()


def test_install_recipe_with_multiple_steps(tmp_path: Path, work_dir: Path) -> None:
    archive = _release_archive()
    root = tmp_path / "root"
    recipe = _recipe(
        archive,
        install=["replicated", {"source": "*.md", "destination": "share/doc/replicated"}],
    )

    installed = install_recipe(recipe, install_root=root, client=_serving(archive), work_dir=work_dir)

    assert installed == [
        root / "bin" / "replicated",
        root / "share" / "doc" / "replicated" / "README.md",
    ]


def test_install_recipe_404_writes_nothing(tmp_path: Path, work_dir: Path) -> None:
    archive = _release_archive()
    root = tmp_path / "root"

    with pytest.raises(NetworkError, match="HTTP 404"):
        install_recipe(
            _recipe(archive),
            install_root=root,
            client=_serving(archive, status_code=404),
            work_dir=work_dir,
        )

    assert not root.exists()
    assert list(work_dir.iterdir()) == []


def test_install_recipe_checksum_mismatch(tmp_path: Path, work_dir: Path) -> None:
    archive = _release_archive()
    tampered = _release_archive(binary=b"not the real binary")
    root = tmp_path / "root"

    with pytest.raises(IntegrityError, match="checksum mismatch"):
        install_recipe(
            _recipe(archive),
            install_root=root,
            client=_serving(tampered),
            work_dir=work_dir,
        )

    assert not root.exists()
    assert list(work_dir.iterdir()) == []


def test_install_recipe_corrupt_archive_cleans_up(tmp_path: Path, work_dir: Path) -> None:
    corrupt = b"this is not a gzip stream"
    root = tmp_path / "root"

    with pytest.raises(ExtractionError):
        install_recipe(
            _recipe(corrupt),
            install_root=root,
            client=_serving(corrupt),
            work_dir=work_dir,
        )

    assert not root.exists()
    assert list(work_dir.iterdir()) == []


def test_install_recipe_missing_source_cleans_up(tmp_path: Path, work_dir: Path) -> None:
    archive = _release_archive()
    root = tmp_path / "root"

    with pytest.raises(PlacementError, match="kots"):
        install_recipe(
            _recipe(archive, install=["kots"]),
            install_root=root,
            client=_serving(archive),
            work_dir=work_dir,
        )

    assert not root.exists()
    assert list(work_dir.iterdir()) == []


def test_reinstall_overwrites_existing_binary(tmp_path: Path, work_dir: Path) -> None:
    root = tmp_path / "root"
    old_archive = _release_archive(binary=b"old")
    new_archive = _release_archive(binary=b"new")

    install_recipe(
        _recipe(old_archive),
        install_root=root,
        client=_serving(old_archive),
        work_dir=work_dir,
    )
    install_recipe(
        _recipe(new_archive),
        install_root=root,
        client=_serving(new_archive),
        work_dir=work_dir,
    )

    assert (root / "bin" / "replicated").read_bytes() == b"new"
    assert sorted(path.name for path in (root / "bin").iterdir()) == ["replicated"]


def test_install_recipe_logs_pipeline_events(
    caplog: pytest.LogCaptureFixture, tmp_path: Path, work_dir: Path
) -> None:
    caplog.set_level(logging.INFO, logger="binrecipe")
    archive = _release_archive()

    install_recipe(
        _recipe(archive),
        install_root=tmp_path / "root",
        client=_serving(archive),
        work_dir=work_dir,
    )

    records = [record for record in caplog.records if hasattr(record, "event")]
    events = [record.event for record in records]
    assert events == [
        "install.started",
        "install.fetched",
        "install.verified",
        "install.extracted",
        "install.placed",
        "install.completed",
    ]
    run_ids = {record.run_id for record in records}
    assert len(run_ids) == 1
    assert len(run_ids.pop()) == 32
    assert get_run_id() == "-"


def test_install_recipe_logs_failure_stage(
    caplog: pytest.LogCaptureFixture, tmp_path: Path, work_dir: Path
) -> None:
    caplog.set_level(logging.INFO, logger="binrecipe")
    archive = _release_archive()

    with pytest.raises(NetworkError):
        install_recipe(
            _recipe(archive),
            install_root=tmp_path / "root",
            client=_serving(archive, status_code=500),
            work_dir=work_dir,
        )

    failed = [record for record in caplog.records if getattr(record, "event", None) == "install.failed"]
    assert len(failed) == 1
    assert failed[0].stage == "fetch"
    assert failed[0].levelno == logging.WARNING


def test_cli_install_end_to_end(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    archive = _release_archive()
    recipe = _recipe(archive)
    recipe_path = tmp_path / "replicated.yaml"
    recipe_path.write_text(
        yaml.safe_dump(
            {
                "name": recipe.name,
                "desc": recipe.description,
                "homepage": recipe.homepage,
                "url": recipe.url,
                "version": recipe.version,
                "sha256": recipe.sha256,
                "install": [{"source": "replicated", "destination": "bin"}],
            }
        ),
        encoding="utf-8",
    )
    root = (tmp_path / "root").resolve()
    other_root = (tmp_path / "other").resolve()
    real_client = httpx.Client
    monkeypatch.setattr("binrecipe.cli.configure_logging", lambda **kwargs: None)

    transport = _transport(archive)
    monkeypatch.setattr(httpx, "Client", lambda *args, **kwargs: real_client(transport=transport))
    result = CliRunner().invoke(cli.app, ["install", str(recipe_path), "--install-root", str(root)])

    assert result.exit_code == 0
    assert os.access(root / "bin" / "replicated", os.X_OK)

    missing = _transport(archive, status_code=404)
    monkeypatch.setattr(httpx, "Client", lambda *args, **kwargs: real_client(transport=missing))
    failing = CliRunner().invoke(
        cli.app,
        ["install", str(recipe_path), "--install-root", str(other_root)],
    )

    assert failing.exit_code == 3
    assert "HTTP 404" in failing.output
    assert not other_root.exists()
