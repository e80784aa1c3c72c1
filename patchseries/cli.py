import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from patchseries.config import load_settings
from patchseries.errors import PatchSeriesError
from patchseries.logging import setup_logging
from patchseries.npm.resolver import find_app_root
from patchseries.workflows.apply import apply_patches_for_app
from patchseries.workflows.context import ProjectContext
from patchseries.workflows.make import MakeMode, make_patch
from patchseries.workflows.rebase import rebase

app = typer.Typer(no_args_is_help = True)


def _fail(message: str) -> None:
    typer.echo(typer.style(message, fg = typer.colors.RED), err = True)
    raise typer.Exit(1)


def _context(**overrides) -> ProjectContext:
    try:
        app_root = find_app_root()
        settings = load_settings(app_root, **overrides)
    except PatchSeriesError as e:
        _fail(str(e))
    except ValidationError as e:
        _fail(f"Invalid configuration: {e}")
    return ProjectContext.for_app(app_root, settings)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help = "Log progress and debug details"),
):
    """
    patch-series: keep ordered series of patches for installed dependencies
    """
    setup_logging(logging.DEBUG if verbose else logging.WARNING)


@app.command("apply")
def apply_cmd(
    patch_dir: Optional[str] = typer.Option(None, "--patch-dir", help = "Directory holding the patch files"),
    reverse: bool = typer.Option(False, "--reverse", help = "Un-apply the patches"),
    partial: bool = typer.Option(False, "--partial", help = "Apply what can be applied and report rejected hunks"),
    error_on_fail: Optional[bool] = typer.Option(None, "--error-on-fail/--no-error-on-fail"),
    error_on_warn: Optional[bool] = typer.Option(None, "--error-on-warn/--no-error-on-warn"),
):
    """Apply every patch file in the patch directory."""
    context = _context(patch_dir = patch_dir, error_on_fail = error_on_fail, error_on_warn = error_on_warn)

    try:
        report = apply_patches_for_app(context, reverse = reverse, best_effort = partial)
    except PatchSeriesError as e:
        _fail(str(e))

    mark = typer.style("✔", fg = typer.colors.GREEN)
    for filename in report.applied:
        typer.echo(f"{filename} {mark}")
    for warning in report.warnings:
        typer.echo(typer.style(f"Warning: {warning}", fg = typer.colors.YELLOW), err = True)
    for error in report.errors:
        typer.echo(typer.style(f"Error: {error}", fg = typer.colors.RED), err = True)
    if report.rejects_path is not None:
        typer.echo(f"Rejected hunks written to {report.rejects_path}")

    exit_code = report.exit_code(context.settings.error_on_fail, context.settings.error_on_warn)
    if exit_code:
        raise typer.Exit(exit_code)


@app.command("make")
def make_cmd(
    packages: list[str] = typer.Argument(..., help = "Package path specifiers, e.g. lodash or parent/@scope/child"),
    append: bool = typer.Option(False, "--append", help = "Add a new patch to the end of the series"),
    name: Optional[str] = typer.Option(None, "--name", help = "Sequence name for an appended patch"),
    include: Optional[str] = typer.Option(None, "--include", help = "Regexp of package paths to include"),
    exclude: Optional[str] = typer.Option(None, "--exclude", help = "Regexp of package paths to exclude"),
    case_sensitive: bool = typer.Option(False, "--case-sensitive-path-filtering"),
    patch_dir: Optional[str] = typer.Option(None, "--patch-dir"),
):
    """Create or update patch files from changes made to installed packages."""
    if name is not None and not append:
        _fail("--name can only be used together with --append")

    context = _context(patch_dir = patch_dir)
    mode = MakeMode.APPEND if append else MakeMode.OVERWRITE_LAST

    for package in packages:
        try:
            result = make_patch(
                context,
                package,
                mode = mode,
                name = name,
                include = include,
                exclude = exclude,
                case_sensitive = case_sensitive,
            )
        except PatchSeriesError as e:
            _fail(str(e))

        for old, new in result.renamed:
            typer.echo(f"Renamed {old} to {new}")
        for removed in result.removed:
            typer.echo(f"Removed {removed}")
        typer.echo(f"{typer.style('✔', fg = typer.colors.GREEN)} Created file {Path(context.settings.patch_dir, result.patch_filename)}")
        for filename in result.fast_forwarded:
            typer.echo(f"  reapplied {filename}")


@app.command("rebase")
def rebase_cmd(
    package: str = typer.Argument(..., help = "Package path specifier"),
    target: str = typer.Argument(..., help = "Patch file name, sequence name or number; 0 un-applies all"),
    patch_dir: Optional[str] = typer.Option(None, "--patch-dir"),
):
    """Un-apply the patches after TARGET so it can be edited."""
    context = _context(patch_dir = patch_dir)

    try:
        result = rebase(context, package, target)
    except PatchSeriesError as e:
        _fail(str(e))

    for filename in result.unapplied:
        typer.echo(f"Un-applied {filename}")
    if result.target is None:
        typer.echo("Make changes to the package and run `patch-series make --append` to add a first patch.")
    else:
        typer.echo(
            f"Make changes to the package and run `patch-series make {package}` to update "
            f"{result.target.patch_filename}, or add --append to insert a new patch after it."
        )
