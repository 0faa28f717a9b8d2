"""Command line interface for installing binaries from recipes."""

from __future__ import annotations

import json
from pathlib import Path

import typer

from binrecipe import __version__
from binrecipe.config import build_recipe_payload, load_recipe_file
from binrecipe.errors import InstallError
from binrecipe.installer import file_sha256, install_recipe, resolve_install_root
from binrecipe.logging_utils import configure_logging

app = typer.Typer(
    no_args_is_help=True,
    help="Install pre-built binaries from declarative recipes.",
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"binrecipe {__version__}")
        raise typer.Exit()


def _fail(exc: InstallError) -> typer.Exit:
    typer.echo(f"error: {exc}", err=True)
    return typer.Exit(code=exc.exit_code)


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Install pre-built binaries from declarative recipes."""


@app.command("install")
def install_command(
    recipe_file: Path = typer.Argument(help="Path to a recipe YAML file."),
    install_root: Path | None = typer.Option(
        None,
        "--install-root",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help="Install root (defaults to BINRECIPE_INSTALL_ROOT or ~/.local).",
    ),
    work_dir: Path | None = typer.Option(
        None,
        "--work-dir",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help="Directory for temporary extraction (defaults to the system temp dir).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log pipeline progress."),
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """Download, verify, extract, and install the binaries a recipe describes."""
    configure_logging(verbose=verbose)
    target_root = resolve_install_root(install_root)

    try:
        recipe = load_recipe_file(recipe_file)
        installed = install_recipe(recipe, install_root=target_root, work_dir=work_dir)
    except InstallError as exc:
        raise _fail(exc) from exc

    if json_output:
        payload = {
            "name": recipe.name,
            "version": recipe.version,
            "install_root": str(target_root),
            "installed": [str(path) for path in installed],
        }
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    typer.echo(f"Installed {recipe.name} {recipe.version} into {target_root}.")
    for path in installed:
        typer.echo(f"  {path}")


@app.command("show")
def show_command(
    recipe_file: Path = typer.Argument(help="Path to a recipe YAML file."),
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """Validate a recipe and print its fields."""
    try:
        recipe = load_recipe_file(recipe_file)
    except InstallError as exc:
        raise _fail(exc) from exc

    payload = build_recipe_payload(recipe)
    if json_output:
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    typer.echo(f"{recipe.name} {recipe.version}: {recipe.description}")
    typer.echo(f"  homepage: {recipe.homepage}")
    typer.echo(f"  url: {recipe.url} ({recipe.archive_format})")
    typer.echo(f"  sha256: {recipe.sha256}")
    for step in recipe.install_steps:
        typer.echo(f"  install: {step.source} -> {step.destination}/")


@app.command("checksum")
def checksum_command(
    archive_file: Path = typer.Argument(
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        help="Local archive to hash.",
    ),
) -> None:
    """Print the SHA-256 of a local archive for a recipe's sha256 field."""
    typer.echo(f"{file_sha256(archive_file)}  {archive_file.name}")


def main() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
