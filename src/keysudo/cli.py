"""KeySudo command-line interface."""

from __future__ import annotations

import logging
import re
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .engine import KeySudoEngine
from .exceptions import KeySudoError
from .mapping import MappingStore
from .models import ApplyResult, AuthMode, CredentialRecord
from .registrar import detect_target_user, register_credential
from .settings import KeySudoSettings, load_settings
from .synthesizer import synthesize

app = typer.Typer(
    name="keysudo",
    help="KeySudo: security-key authentication for sudo via pam_u2f",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)


def _get_version_string() -> str:
    """Get version string from package metadata or pyproject.toml."""
    try:
        return get_version("keysudo")
    except PackageNotFoundError:
        pass

    pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
    if pyproject_path.exists():
        content = pyproject_path.read_text()
        match = re.search(r'version\s*=\s*["\']([^"\']+)["\']', content)
        if match:
            return f"{match.group(1)} (development)"

    return "unknown"


def version_callback(value: bool) -> None:
    """Callback for --version flag."""
    if value:
        console.print(f"KeySudo version {_get_version_string()}")
        raise typer.Exit


def configure_logging(verbose: bool) -> None:
    """Route library logging through rich."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log each step",
    ),
) -> None:
    """KeySudo: security-key authentication for sudo via pam_u2f."""
    configure_logging(verbose)


def _load(config: Path | None) -> KeySudoSettings:
    try:
        return load_settings(config)
    except KeySudoError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}", soft_wrap=True)
        raise typer.Exit(1) from e


def _report_error(e: KeySudoError, stack_file: Path) -> None:
    console.print(f"[red]Error:[/red] {escape(str(e))}", soft_wrap=True)
    for key in ("path", "identity"):
        if key in e.details:
            console.print(f"  {key}: {e.details[key]}", soft_wrap=True)
    if e.snapshot:
        console.print("[yellow]Warning:[/yellow] To roll back, run:")
        console.print(f"  sudo cp {e.snapshot} {stack_file}", soft_wrap=True)


def _print_summary(result: ApplyResult, identity: str) -> None:
    table = Table(title="KeySudo Setup")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    policy = result.policy
    table.add_row("Mode", policy.mode.value)
    table.add_row("Cue Prompt", "Enabled" if policy.prompt_cue else "Disabled")
    table.add_row("User", identity)
    table.add_row("Mapping File", str(policy.mapping_store_path))
    table.add_row("Origin", policy.origin_identifier)
    table.add_row("Stack File", str(result.patch.path))
    table.add_row("Stack Change", result.patch.action.value.replace("_", " "))
    table.add_row("Backup", str(result.snapshot.path))
    console.print(table)

    console.print(
        "\n[yellow]Warning:[/yellow] Test sudo in a NEW terminal before closing this session!",
    )
    console.print("  1. Run: sudo -k")
    console.print("  2. Run: sudo echo SUCCESS")
    if policy.prompt_cue:
        console.print("  You should see 'Please touch the device.' and touch your key.")
    else:
        console.print("  Your key should blink (no text prompt); touch it.")
    if policy.mode == AuthMode.TWO_FACTOR:
        console.print("  You will also need to enter your password.")
    console.print("\nIf you get locked out, restore the backup from another root session:")
    console.print(f"  sudo cp {result.snapshot.path} {result.patch.path}", soft_wrap=True)


@app.command()
def apply(
    mode: str = typer.Option(
        "passwordless",
        "--mode",
        "-m",
        help="Authentication mode: passwordless or 2fa",
    ),
    cue: bool = typer.Option(
        True,
        "--cue/--no-cue",
        help="Show a touch prompt",
    ),
    user: str | None = typer.Option(
        None,
        "--user",
        "-u",
        help="User to enroll (defaults to the user who invoked sudo)",
    ),
    authfile: Path | None = typer.Option(
        None,
        "--authfile",
        help="Mapping file path (default: /etc/u2f_mappings)",
    ),
    stack_file: Path | None = typer.Option(
        None,
        "--stack-file",
        help="PAM stack file (default: /etc/pam.d/sudo)",
    ),
    record: str | None = typer.Option(
        None,
        "--record",
        help="Pre-registered 'user:payload' record instead of touching the key now",
    ),
    origin: str | None = typer.Option(
        None,
        "--origin",
        help="Origin identifier (default: pam://<hostname>)",
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML settings file",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "--assume-yes",
        "-y",
        help="Skip confirmation",
    ),
    prune_duplicates: bool = typer.Option(
        False,
        "--prune-duplicates",
        help="Remove extra pam_u2f lines instead of failing",
    ),
    unique_snapshots: bool = typer.Option(
        False,
        "--unique-snapshots",
        help="Never overwrite a backup taken in the same second",
    ),
) -> None:
    """Register a key and configure sudo to accept it.

    Runs three steps in order: store the credential record, back up the
    stack file, then add or update the pam_u2f line.
    """
    settings = _load(config)
    if unique_snapshots:
        settings = settings.model_copy(update={"unique_snapshots": True})
    engine = KeySudoEngine(settings)
    target = stack_file or settings.stack_file

    try:
        credential = CredentialRecord.parse(record) if record else None
        identity = user or (credential.identity if credential else detect_target_user())
        policy = engine.build_policy(
            mode,
            prompt_cue=cue,
            mapping_store_path=authfile,
            origin=origin,
        )

        if not yes:
            console.print(
                f"[yellow]This will modify {target} and may affect your ability to use sudo.[/yellow]",
            )
            if not typer.confirm(
                f"Proceed with setup for user {identity} in {policy.mode.value} mode?",
            ):
                console.print("Operation cancelled")
                raise typer.Exit(0)

        if credential is None:
            console.print("Touch your security key now...")
            credential = register_credential(identity, policy.origin_identifier)

        result = engine.apply(
            policy,
            identity,
            credential,
            stack_file=target,
            prune_duplicates=prune_duplicates or None,
        )
    except KeySudoError as e:
        _report_error(e, target)
        raise typer.Exit(1) from e

    console.print(f"[green]✓[/green] Mapping saved to {result.merge.path}")
    console.print(f"[green]✓[/green] Backed up stack file to {result.snapshot.path}")
    console.print(f"[green]✓[/green] Stack file {result.patch.path} updated")
    _print_summary(result, identity)


@app.command()
def line(
    mode: str = typer.Option("passwordless", "--mode", "-m", help="passwordless or 2fa"),
    cue: bool = typer.Option(True, "--cue/--no-cue", help="Show a touch prompt"),
    authfile: Path | None = typer.Option(None, "--authfile", help="Mapping file path"),
    origin: str | None = typer.Option(None, "--origin", help="Origin identifier"),
    config: Path | None = typer.Option(None, "--config", "-c", help="YAML settings file"),
) -> None:
    """Print the pam_u2f line for a policy without changing anything."""
    settings = _load(config)
    engine = KeySudoEngine(settings)
    try:
        policy = engine.build_policy(
            mode,
            prompt_cue=cue,
            mapping_store_path=authfile,
            origin=origin,
        )
    except KeySudoError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}", soft_wrap=True)
        raise typer.Exit(1) from e
    typer.echo(synthesize(policy, settings.module_reference))


@app.command()
def status(
    stack_file: Path | None = typer.Option(None, "--stack-file", help="PAM stack file"),
    authfile: Path | None = typer.Option(None, "--authfile", help="Mapping file path"),
    config: Path | None = typer.Option(None, "--config", "-c", help="YAML settings file"),
) -> None:
    """Show the owned line, enrolled users and available backups."""
    settings = _load(config)
    engine = KeySudoEngine(settings)
    target = stack_file or settings.stack_file
    store = MappingStore(authfile or settings.mapping_store)

    try:
        result = engine.patcher.inspect(target)
        identities = store.identities()
    except KeySudoError as e:
        _report_error(e, target)
        raise typer.Exit(1) from e

    table = Table(title="KeySudo Status")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Stack File", str(target))
    if result.index is None:
        table.add_row("Owned Line", "not present")
    else:
        table.add_row("Owned Line", f"line {result.index + 1}")
    table.add_row("Duplicate Lines", str(len(result.duplicates)))
    table.add_row("Mapping File", str(store.path))
    table.add_row("Enrolled Users", ", ".join(identities) or "none")
    console.print(table)

    if result.duplicates:
        console.print(
            "[yellow]Warning:[/yellow] more than one pam_u2f line; "
            "re-run apply with --prune-duplicates",
        )

    backups = engine.snapshots.list_snapshots(target)
    console.print("\n[bold]Backups:[/bold]")
    if not backups:
        console.print("  none")
    for backup in backups:
        console.print(f"  • {backup}")


@app.command()
def version() -> None:
    """Show KeySudo version information."""
    console.print(f"KeySudo version {_get_version_string()}")


def main() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
