"""Click commands.

    nodeselector-notify run                 start the watcher
    nodeselector-notify check-config        validate env config, print it redacted
    nodeselector-notify classify POD.json   classify a pod manifest offline
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from nodeselector_notify import __version__
from nodeselector_notify.classifier import classify
from nodeselector_notify.config import ConfigError, load_config, redacted
from nodeselector_notify.models.pods import snapshot_from_raw


@click.group()
@click.version_option(__version__, prog_name="nodeselector-notify")
def cli() -> None:
    """Notify a webhook about pods the scheduler cannot place."""


@cli.command()
def run() -> None:
    """Watch the cluster until SIGTERM/SIGINT."""
    try:
        config = load_config()
    except ConfigError as exc:
        click.echo(f"configuration error: {exc}", err=True)
        raise SystemExit(1) from exc

    from nodeselector_notify.app import main

    asyncio.run(main(config))


@cli.command("check-config")
def check_config() -> None:
    """Load configuration from the environment and print it with secrets masked."""
    try:
        config = load_config()
    except ConfigError as exc:
        click.echo(f"configuration error: {exc}", err=True)
        raise SystemExit(1) from exc
    click.echo(json.dumps(redacted(config), indent=2, sort_keys=True))


@cli.command("classify")
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def classify_cmd(manifest: Path) -> None:
    """Classify the pod in MANIFEST (JSON, as from ``kubectl get pod -o json``)."""
    try:
        raw = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise click.ClickException(f"cannot read {manifest}: {exc}") from exc
    if not isinstance(raw, dict) or raw.get("kind", "Pod") != "Pod":
        raise click.ClickException(f"{manifest} does not contain a Pod object")

    snapshot = snapshot_from_raw(raw)
    status = classify(snapshot)
    result: dict[str, object] = {
        "pod": str(snapshot.ref),
        "phase": status.phase.value,
        "unschedulable": status.is_unschedulable,
    }
    if status.cause is not None:
        result["cause"] = status.cause.kind.value
        result["reason"] = status.cause.describe()
        result["key"] = status.cause.key
    click.echo(json.dumps(result, indent=2))
