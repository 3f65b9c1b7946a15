"""preview-deploy CLI: publish and retire pull-request previews."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional

import typer
from pydantic import ValidationError as SettingsValidationError

from preview_deploy import __version__
from preview_deploy.domain import RunMode
from preview_deploy.env_loader import load_local_env
from preview_deploy.errors import ValidationError
from preview_deploy.models import PreviewResult
from preview_deploy.services import build_preview_service
from preview_deploy.settings import Settings

app = typer.Typer(
    name="preview-deploy",
    help="Publish and retire pull-request previews on a shared branch.",
    add_completion=False,
)

logger = logging.getLogger("preview-deploy.cli")


# ---- version callback -----------------------------------------------------
def _version_callback(value: bool) -> None:
    if value:
        print(f"preview-deploy {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """preview-deploy: pull-request previews on a shared publishing branch."""


# ---- shared plumbing -------------------------------------------------------

def _load_settings(overrides: Dict[str, Optional[str]]) -> Settings:
    load_local_env()
    values = dict(os.environ)
    values.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return Settings.model_validate(values)
    except SettingsValidationError as exc:
        print(f"Error: invalid configuration:\n{exc}", file=sys.stderr)
        raise SystemExit(1)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def write_outputs(result: PreviewResult, output_path: Optional[str]) -> None:
    outputs = result.outputs()
    for key, value in outputs.items():
        print(f"{key}={value}")
    if not output_path:
        return
    with Path(output_path).open("a", encoding="utf-8") as handle:
        for key, value in outputs.items():
            handle.write(f"{key}={value}\n")


async def _execute(
    settings: Settings,
    mode: Optional[RunMode],
    preview_id: Optional[int],
    source_dir: Optional[str],
) -> PreviewResult:
    service = build_preview_service(settings)
    return await service.run(mode, preview_id=preview_id, source_dir=source_dir)


def _run(
    mode: Optional[RunMode],
    *,
    preview_id: Optional[int],
    source_dir: Optional[str],
    overrides: Dict[str, Optional[str]],
) -> None:
    settings = _load_settings(overrides)
    _configure_logging(settings.log_level)
    logger.debug(
        "Resolved settings: branch=%s prefix=%s mode=%s dry_run=%s",
        settings.preview_branch,
        settings.path_prefix,
        settings.mode.value,
        settings.dry_run,
    )

    try:
        result = asyncio.run(_execute(settings, mode, preview_id, source_dir))
    except ValidationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1)

    write_outputs(result, settings.output_path)
    if not result.succeeded:
        print(f"Error ({result.error_type}): {result.error}", file=sys.stderr)
        raise SystemExit(1)


def _overrides(
    *,
    base_url: Optional[str],
    prefix: Optional[str],
    branch: Optional[str],
    comment: Optional[bool],
    wait: Optional[bool],
    max_wait: Optional[float],
    dry_run: bool,
) -> Dict[str, Optional[str]]:
    def _flag(value: Optional[bool]) -> Optional[str]:
        return None if value is None else str(value).lower()

    return {
        "PREVIEW_BASE_URL": base_url,
        "PREVIEW_PATH_PREFIX": prefix,
        "PREVIEW_BRANCH": branch,
        "PREVIEW_COMMENT": _flag(comment),
        "PREVIEW_WAIT_FOR_DEPLOYMENT": _flag(wait),
        "PREVIEW_MAX_WAIT_SECONDS": None if max_wait is None else str(max_wait),
        "PREVIEW_DRY_RUN": "true" if dry_run else None,
    }


_PREVIEW_ID = typer.Option(None, "--preview-id", "-i", min=1, help="Pull-request number.")
_BASE_URL = typer.Option(None, "--base-url", help="Base URL the branch is served from.")
_PREFIX = typer.Option(None, "--prefix", "-p", help="Directory holding previews.")
_BRANCH = typer.Option(None, "--branch", "-b", help="Publishing branch.")
_COMMENT = typer.Option(None, "--comment/--no-comment", help="Keep a status comment.")
_WAIT = typer.Option(None, "--wait/--no-wait", help="Poll the preview URL after pushing.")
_MAX_WAIT = typer.Option(None, "--max-wait", min=0, help="Seconds to wait for availability.")
_DRY_RUN = typer.Option(False, "--dry-run", help="Log the push plan without writing.")


# ---- commands --------------------------------------------------------------

@app.command()
def deploy(
    source_dir: Optional[str] = typer.Argument(
        None, help="Built artifact directory. Defaults to PREVIEW_SOURCE_DIR."
    ),
    preview_id: Optional[int] = _PREVIEW_ID,
    base_url: Optional[str] = _BASE_URL,
    prefix: Optional[str] = _PREFIX,
    branch: Optional[str] = _BRANCH,
    comment: Optional[bool] = _COMMENT,
    wait: Optional[bool] = _WAIT,
    max_wait: Optional[float] = _MAX_WAIT,
    dry_run: bool = _DRY_RUN,
) -> None:
    """Publish (or replace) the preview for a pull request."""
    _run(
        RunMode.DEPLOY,
        preview_id=preview_id,
        source_dir=source_dir,
        overrides=_overrides(
            base_url=base_url,
            prefix=prefix,
            branch=branch,
            comment=comment,
            wait=wait,
            max_wait=max_wait,
            dry_run=dry_run,
        ),
    )


@app.command()
def cleanup(
    preview_id: Optional[int] = _PREVIEW_ID,
    base_url: Optional[str] = _BASE_URL,
    prefix: Optional[str] = _PREFIX,
    branch: Optional[str] = _BRANCH,
    comment: Optional[bool] = _COMMENT,
    dry_run: bool = _DRY_RUN,
) -> None:
    """Remove the preview for a pull request. Safe to repeat."""
    _run(
        RunMode.CLEANUP,
        preview_id=preview_id,
        source_dir=None,
        overrides=_overrides(
            base_url=base_url,
            prefix=prefix,
            branch=branch,
            comment=comment,
            wait=None,
            max_wait=None,
            dry_run=dry_run,
        ),
    )


@app.command()
def run(
    preview_id: Optional[int] = _PREVIEW_ID,
    dry_run: bool = _DRY_RUN,
) -> None:
    """Deploy or clean up according to PREVIEW_MODE (auto follows the PR event)."""
    _run(
        None,
        preview_id=preview_id,
        source_dir=None,
        overrides=_overrides(
            base_url=None,
            prefix=None,
            branch=None,
            comment=None,
            wait=None,
            max_wait=None,
            dry_run=dry_run,
        ),
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
