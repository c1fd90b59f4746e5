"""CTFd challenge operator CLI (ctfdo).

Applies declarative challenge specs against a CTFd instance and keeps the
last-applied snapshot of each challenge in the state directory.

Usage:
    ctfdo plan                 # Show what apply would change, no API calls
    ctfdo apply                # Create or update every challenge spec
    ctfdo apply web-101        # Apply a single challenge
    ctfdo refresh              # Re-read applied challenges from CTFd
    ctfdo import web-101 42    # Adopt existing challenge 42 as web-101
    ctfdo destroy web-101      # Delete a challenge and forget its state

Connection settings are read from the environment (CTFD_URL, CTFD_API_KEY,
SPECS_DIR, STATE_DIR, REQUEST_TIMEOUT, MAX_UPLOAD_SIZE_BYTES,
ENABLE_JSON_LOGGING).

Exit code is 1 whenever a challenge finished with error diagnostics. The
snapshot of a failed pass is still saved so that entries created remotely
are not orphaned.
"""

from __future__ import annotations

import functools
import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from .codec import InvariantViolation
from .config import Config, ConfigurationError
from .diagnostics import Diagnostics, Severity
from .file_sync import read_local_file
from .gateway import CTFdGateway, RemoteGateway
from .lifecycle import ChallengeController, describe_changes
from .main import setup_logging
from .spec_loader import (
    STATE_SUFFIX,
    SpecLoadError,
    discover_specs,
    load_spec,
    load_state,
    save_state,
)

logger = logging.getLogger(__name__)

DEFAULT_SPECS_DIR = "./challenges"
DEFAULT_STATE_DIR = "./.ctfd-state"


# =============================================================================
# Helpers
# =============================================================================


def load_config() -> Config:
    """Load configuration from the environment and set up logging."""
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    setup_logging(json_output=config.enable_json_logging)
    return config


@contextmanager
def open_gateway(ctx: click.Context, config: Config) -> Iterator[RemoteGateway]:
    """Yield the gateway injected through ``ctx.obj``, or a real CTFd client."""
    injected = (ctx.obj or {}).get("gateway")
    if injected is not None:
        yield injected
        return
    with CTFdGateway.from_config(config) as gateway:
        yield gateway


@contextmanager
def cancel_on_interrupt(cancel_event: threading.Event) -> Iterator[None]:
    """Turn the first Ctrl-C into a cooperative cancellation.

    A second Ctrl-C falls back to the default handler and aborts at once.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.getsignal(signal.SIGINT)

    def handler(signum: int, frame: Any) -> None:
        click.secho(
            "Interrupted: finishing the call in flight, then stopping...", fg="yellow", err=True
        )
        cancel_event.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def make_controller(
    config: Config, gateway: RemoteGateway, cancel_event: threading.Event
) -> ChallengeController:
    reader = functools.partial(read_local_file, max_size_bytes=config.max_upload_size_bytes)
    return ChallengeController(gateway, file_reader=reader, cancel_event=cancel_event)


def report(name: str, diags: Diagnostics) -> bool:
    """Print diagnostics of one challenge; return True if it failed."""
    for diag in diags:
        color = "red" if diag.severity is Severity.ERROR else "yellow"
        click.secho(f"  [{name}] {diag}", fg=color, err=True)
    return diags.has_error()


def applied_names(state_dir: Path) -> list[str]:
    """Names of all challenges that have a state snapshot."""
    if not state_dir.exists():
        return []
    return sorted(p.stem for p in state_dir.glob(f"*{STATE_SUFFIX}") if p.is_file())


def finish(ctx: click.Context, failed: list[str]) -> None:
    if failed:
        click.secho(f"✗ Failed: {', '.join(failed)}", fg="red", err=True)
        ctx.exit(1)
    click.secho("✓ Done", fg="green")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="ctfdo")
def cli() -> None:
    """CTFd challenge operator (ctfdo).

    Reconciles challenges declared as YAML specs against a CTFd instance.

    \b
    Quick Start:
        export CTFD_URL=https://ctf.example.com CTFD_API_KEY=...
        ctfdo plan
        ctfdo apply
    """
    pass


@cli.command()
@click.argument("names", nargs=-1)
@click.pass_context
def apply(ctx: click.Context, names: tuple[str, ...]) -> None:
    """Create or update challenges from their specs (all by default)."""
    config = load_config()
    targets = list(names) or discover_specs(config.specs_dir)
    if not targets:
        click.echo(f"No challenge specs found in {config.specs_dir}")
        return

    logger.info("Applying challenges", extra={"count": len(targets), "ctfd_url": config.ctfd_url})
    failed: list[str] = []
    cancel_event = threading.Event()
    with open_gateway(ctx, config) as gateway, cancel_on_interrupt(cancel_event):
        controller = make_controller(config, gateway, cancel_event)
        for name in targets:
            if cancel_event.is_set():
                failed.append(name)
                continue
            try:
                new = load_spec(config.specs_dir, name)
                old = load_state(config.state_dir, name)
            except SpecLoadError as e:
                click.secho(f"  [{name}] {e}", fg="red", err=True)
                failed.append(name)
                continue

            try:
                if old is None:
                    click.echo(f"Creating {name}...")
                    snapshot, diags = controller.create_all(new)
                else:
                    click.echo(f"Updating {name} (ID: {old.id})...")
                    snapshot, diags = controller.update_all(old, new)
            except InvariantViolation as e:
                raise click.ClickException(f"Invariant violation while applying {name}: {e}") from e

            if snapshot is not None:
                save_state(config.state_dir, name, snapshot)
            if report(name, diags):
                failed.append(name)

    finish(ctx, failed)


@cli.command()
@click.argument("names", nargs=-1)
@click.pass_context
def refresh(ctx: click.Context, names: tuple[str, ...]) -> None:
    """Re-read applied challenges from CTFd and update their state."""
    config = load_config()
    targets = list(names) or applied_names(config.state_dir)

    failed: list[str] = []
    cancel_event = threading.Event()
    with open_gateway(ctx, config) as gateway, cancel_on_interrupt(cancel_event):
        controller = make_controller(config, gateway, cancel_event)
        for name in targets:
            try:
                previous = load_state(config.state_dir, name)
            except SpecLoadError as e:
                click.secho(f"  [{name}] {e}", fg="red", err=True)
                failed.append(name)
                continue
            if previous is None or previous.id is None:
                click.secho(f"  [{name}] not applied, nothing to refresh", fg="yellow", err=True)
                continue

            click.echo(f"Refreshing {name} (ID: {previous.id})...")
            try:
                snapshot, diags = controller.read_all(previous.id, previous)
            except InvariantViolation as e:
                raise click.ClickException(f"Invariant violation while reading {name}: {e}") from e

            # A vanished challenge is forgotten; the next apply recreates it
            save_state(config.state_dir, name, snapshot)
            if report(name, diags):
                failed.append(name)

    finish(ctx, failed)


@cli.command("import")
@click.argument("name")
@click.argument("challenge_id", type=click.IntRange(min=1))
@click.pass_context
def import_challenge(ctx: click.Context, name: str, challenge_id: int) -> None:
    """Adopt an existing CTFd challenge under NAME.

    The flag and local file paths cannot be read back; files are re-uploaded
    on the next apply.
    """
    config = load_config()
    try:
        existing = load_state(config.state_dir, name)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e
    if existing is not None:
        raise click.ClickException(
            f"Challenge '{name}' is already managed (ID: {existing.id}); "
            "destroy it or remove its state first"
        )

    cancel_event = threading.Event()
    with open_gateway(ctx, config) as gateway, cancel_on_interrupt(cancel_event):
        controller = make_controller(config, gateway, cancel_event)
        try:
            snapshot, diags = controller.read_all(challenge_id)
        except InvariantViolation as e:
            raise click.ClickException(f"Invariant violation while importing {name}: {e}") from e

    failed = report(name, diags)
    if snapshot is None:
        raise click.ClickException(f"Challenge {challenge_id} could not be imported")
    save_state(config.state_dir, name, snapshot)
    click.echo(f"Imported challenge {challenge_id} as {name}")
    finish(ctx, [name] if failed else [])


@cli.command()
@click.argument("names", nargs=-1)
@click.confirmation_option(prompt="Delete the challenges from CTFd?")
@click.pass_context
def destroy(ctx: click.Context, names: tuple[str, ...]) -> None:
    """Delete applied challenges from CTFd (all by default)."""
    config = load_config()
    targets = list(names) or applied_names(config.state_dir)

    failed: list[str] = []
    cancel_event = threading.Event()
    with open_gateway(ctx, config) as gateway, cancel_on_interrupt(cancel_event):
        controller = make_controller(config, gateway, cancel_event)
        for name in targets:
            try:
                old = load_state(config.state_dir, name)
            except SpecLoadError as e:
                click.secho(f"  [{name}] {e}", fg="red", err=True)
                failed.append(name)
                continue
            if old is None:
                click.secho(f"  [{name}] not applied, nothing to destroy", fg="yellow", err=True)
                continue

            click.echo(f"Destroying {name} (ID: {old.id})...")
            diags = controller.delete_all(old)
            if report(name, diags):
                failed.append(name)
            else:
                save_state(config.state_dir, name, None)

    finish(ctx, failed)


@cli.command()
@click.argument("names", nargs=-1)
@click.option(
    "--specs-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="SPECS_DIR",
    default=DEFAULT_SPECS_DIR,
    show_default=True,
    help="Directory of challenge specs",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="STATE_DIR",
    default=DEFAULT_STATE_DIR,
    show_default=True,
    help="Directory of last-applied snapshots",
)
@click.pass_context
def plan(ctx: click.Context, names: tuple[str, ...], specs_dir: Path, state_dir: Path) -> None:
    """Show what apply would change, without contacting CTFd."""
    targets = list(names) or discover_specs(specs_dir)

    failed: list[str] = []
    for name in targets:
        try:
            new = load_spec(specs_dir, name)
            old = load_state(state_dir, name)
        except SpecLoadError as e:
            click.secho(f"  [{name}] {e}", fg="red", err=True)
            failed.append(name)
            continue

        actions = describe_changes(old, new)
        if not actions:
            click.echo(f"{name}: up to date")
            continue
        click.echo(f"{name}:")
        for action in actions:
            click.echo(f"  - {action}")

    if failed:
        ctx.exit(1)
