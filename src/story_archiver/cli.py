from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import typer

from .workflows.archiver_config import (
    ARCHIVE_VIDEOS,
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_ERRORS,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
)
from .workflows.archiver_utils import collect_environment_warnings
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.pipeline import EXIT_NO_STORY, ArchiveOptions, run_archive_pipeline

app = typer.Typer(add_help_option=True, no_args_is_help=False)


def _usage() -> str:
    return """Story archiver

Usage:
  story-archiver archive [STORY_ID] [--out <DIR>] [--update] [--concurrency N]
                         [--retries N] [--max-errors N | --ignore-errors]
                         [--downloader PATH] [--timeout SECONDS] [--refresh-assets]
                         [--json] [--verbose]
  story-archiver doctor [--out <DIR>] [--downloader PATH]

STORY_ID may be omitted when <DIR>/story.json (or <DIR>/story/story.json)
belongs to a previous archive; its id is reused.
"""


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(message)s",
        force=True,
    )


def _print_environment_warnings(downloader: Optional[str], archive_videos: bool) -> None:
    for warning in collect_environment_warnings(downloader):
        if warning.get("code") == "downloader_missing" and not archive_videos:
            continue
        message = warning.get("message") or warning.get("code") or "environment warning"
        remedy = warning.get("remedy")
        if remedy:
            typer.echo(f"[story-archiver] warning: {message} ({remedy})", err=True)
        else:
            typer.echo(f"[story-archiver] warning: {message}", err=True)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is None:
        typer.echo(_usage())
        raise typer.Exit(code=0)


@app.command("archive")
def archive_cmd(
    story_id: Optional[int] = typer.Argument(None, help="Story identifier; defaults to the id of a previous archive."),
    out: Path = typer.Option(Path("."), "--out", help="Output root; the archive is created beneath it."),
    update: bool = typer.Option(False, "--update", help="Re-fetch story metadata even if a copy exists."),
    concurrency: int = typer.Option(DEFAULT_CONCURRENCY, "--concurrency", min=1, help="Maximum parallel downloads."),
    retries: int = typer.Option(DEFAULT_RETRIES, "--retries", min=0, help="Retries per download after the first attempt."),
    max_errors: int = typer.Option(DEFAULT_MAX_ERRORS, "--max-errors", min=0, help="Abort once failures exceed this (0 = never)."),
    ignore_errors: bool = typer.Option(False, "--ignore-errors", help="Never abort on download failures."),
    downloader: Optional[str] = typer.Option(None, "--downloader", help="Video downloader executable (default: yt-dlp)."),
    timeout: float = typer.Option(DEFAULT_TIMEOUT, "--timeout", help="Per-request timeout in seconds."),
    refresh_assets: bool = typer.Option(False, "--refresh-assets", help="Re-download assets that already exist."),
    no_videos: bool = typer.Option(False, "--no-videos", help="Leave video links remote."),
    json_out: bool = typer.Option(False, "--json", help="Print the run summary as JSON on stdout."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Archive one story into a self-contained directory."""
    _configure_logging(verbose)
    archive_videos = ARCHIVE_VIDEOS and not no_videos
    if not json_out:
        _print_environment_warnings(downloader, archive_videos)
    options = ArchiveOptions(
        story_id=story_id,
        out_root=out,
        force_update=update,
        refresh_assets=refresh_assets,
        concurrency=concurrency,
        retries=retries,
        max_errors=0 if ignore_errors else max_errors,
        timeout=timeout,
        downloader=downloader,
        archive_videos=archive_videos,
    )
    result = run_archive_pipeline(options)
    if json_out:
        sys.stdout.write(json.dumps(result.to_dict(), ensure_ascii=False) + "\n")
    elif result.exit_code == EXIT_NO_STORY:
        typer.echo(f"error: {result.error}", err=True)
        typer.echo(_usage(), err=True)
    elif result.error:
        typer.echo(f"fatal: {result.error}", err=True)
    else:
        typer.echo(f"archived story {result.context.story_id} into {result.archive_dir}")
    raise typer.Exit(code=result.exit_code)


@app.command("doctor")
def doctor_cmd(
    out: Optional[Path] = typer.Option(None, "--out", help="Output root to check for writability."),
    downloader: Optional[str] = typer.Option(None, "--downloader", help="Video downloader executable to look for."),
) -> None:
    """Print environment and dependency diagnostics."""
    report = build_doctor_report(out_root=out, downloader=downloader)
    typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)
