"""Vault commands: keygen, push, pull, sync, status, diff, rekey, audit."""
import sys
import asyncio
import logging
from datetime import timedelta
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .version import __version__
from .vault.audit import AuditLog, format_entry
from .vault.config import KeySources, VaultConfig
from .vault.envelope import format_timestamp, utcnow
from .vault.exceptions import KeyNotFoundError, RekeyError, VaultError
from .vault.result import Err, Ok
from .vault.team_vault import VaultOrchestrator

console = Console()


def _run(coro):
    match asyncio.run(coro):
        case Ok(value):
            return value
        case Err(err):
            _fail(err)


def _fail(err: VaultError) -> None:
    console.print(f"[bold red]{type(err).__name__}:[/] {escape(err.message)}")
    if isinstance(err, KeyNotFoundError):
        console.print("  Run [cyan]nevr-vault keygen[/] to create a key.")
    elif isinstance(err, RekeyError):
        console.print("  [bold yellow]New key (store it now):[/]")
        click.echo(err.key)
    sys.exit(1)


async def _call(ctx: click.Context, method: str, *args, **kwargs):
    async with VaultOrchestrator(ctx.obj["config"]) as vault:
        return await getattr(vault, method)(ctx.obj["cwd"], *args, **kwargs)


def _sources(ctx: click.Context) -> KeySources:
    return KeySources.from_env(
        override=ctx.obj["key"], variable=ctx.obj["config"].key_variable
    )


@click.group()
@click.version_option(__version__, prog_name="nevr-vault")
@click.option("--cwd", default=".", type=click.Path(file_okay=False), help="Project directory.")
@click.option("--key", default=None, help="Vault key (overrides discovery).")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
@click.pass_context
def cli(ctx, cwd, key, verbose):
    """Encrypted team vault for .env files.

    Commit the vault file, share the key out-of-band.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["cwd"] = Path(cwd)
    ctx.obj["key"] = key
    ctx.obj["config"] = VaultConfig.from_env()


@cli.command()
@click.option("--file", "target", default=None, help="Env file to store the key in.")
@click.option("--print-only", is_flag=True, help="Print the key without saving it.")
@click.option("--no-gitignore", is_flag=True, help="Leave .gitignore untouched.")
@click.pass_context
def keygen(ctx, target, print_only, no_gitignore):
    """Generate a new vault key."""
    result = _run(
        _call(ctx, "keygen", target=target, save=not print_only, gitignore=not no_gitignore)
    )
    if print_only:
        click.echo(result.key)
        return
    verb = "replaced in" if result.replaced else "saved to"
    console.print(f"\n  [green]Key {verb}[/] {result.saved_to}")
    if result.gitignore_added:
        console.print(f"  Added to .gitignore: {', '.join(result.gitignore_added)}")
    console.print("  Share the key with your team through a secure channel.\n")


@cli.command()
@click.pass_context
def push(ctx):
    """Encrypt local env files into the vault."""
    result = _run(_call(ctx, "push", _sources(ctx)))
    console.print(
        f"\n  [green]Vault updated:[/] {result.vault_path.name} "
        f"({result.variables} variables, key from {result.key_source})"
    )
    if result.key_excluded:
        console.print(f"  [dim]{ctx.obj['config'].key_variable} was not stored in the vault.[/]")
    console.print("  Commit the vault file to share it.\n")


@cli.command()
@click.pass_context
def pull(ctx):
    """Decrypt the vault into the local env file."""
    result = _run(_call(ctx, "pull", _sources(ctx)))
    console.print(
        f"\n  [green]Pulled[/] {result.variables} variables into {result.env_path.name} "
        f"(vault updated {format_timestamp(result.updated_at)})\n"
    )


@cli.command()
@click.pass_context
def sync(ctx):
    """Merge the local env file and the vault; local values win."""
    result = _run(_call(ctx, "sync", _sources(ctx)))
    console.print(
        f"\n  [green]Synced[/] {result.env_path.name} with {result.vault_path.name} "
        f"({result.variables} variables)"
    )
    for label, names in (
        ("added to vault", result.added),
        ("updated in vault", result.updated),
        ("pulled from vault", result.from_vault),
    ):
        if names:
            console.print(f"  {label}: {', '.join(names)}")
    console.print("  Commit the vault file to share it.\n")


@cli.command()
@click.option("--recent", default=5, help="Audit entries to show.")
@click.option("--record/--no-record", default=True, help="Append a status entry to the audit log.")
@click.pass_context
def status(ctx, recent, record):
    """Show key, vault and audit state."""
    info = _run(_call(ctx, "status", _sources(ctx), recent=recent, record=record))
    table = Table(title="Vault Status", show_header=False)
    table.add_column("Item", style="cyan")
    table.add_column("Value")
    table.add_row(
        "Key",
        f"[green]{info.key_source}[/]" if info.has_key else "[red]not found[/]",
    )
    table.add_row(
        "Vault",
        f"{info.vault_path.name}" if info.vault_exists else "[yellow]missing[/]",
    )
    if info.metadata is not None:
        meta = info.metadata
        table.add_row("Variables", str(meta.variables))
        table.add_row("Created", f"{format_timestamp(meta.created_at)} by {meta.created_by or 'unknown'}")
        table.add_row("Updated", format_timestamp(meta.updated_at))
    elif info.metadata_error:
        table.add_row("Metadata", f"[red]{escape(info.metadata_error)}[/]")
    table.add_row(
        "Env file",
        info.env_path.name if info.env_exists else "[yellow]missing[/]",
    )
    console.print()
    console.print(table)
    if info.audit_error:
        console.print(f"  [red]Audit log unreadable:[/] {escape(info.audit_error)}")
    elif info.recent:
        console.print("\n  [bold]Recent activity[/]")
        for entry in info.recent:
            console.print(f"  {escape(format_entry(entry))}", highlight=False)
    console.print()


@cli.command()
@click.pass_context
def diff(ctx):
    """Compare variable names between vault and local env file."""
    result = _run(_call(ctx, "diff", _sources(ctx)))
    if result.in_sync:
        console.print("\n  [green]Local env file matches the vault.[/]\n")
        return
    console.print()
    for name in result.only_in_vault:
        console.print(f"  [green]+ {name}[/] (only in vault)")
    for name in result.only_in_local:
        console.print(f"  [red]- {name}[/] (only local)")
    for name in result.different:
        console.print(f"  [yellow]~ {name}[/] (value differs)")
    console.print()


@cli.command()
@click.option("--new-key", default=None, help="Use this key instead of generating one.")
@click.pass_context
def rekey(ctx, new_key):
    """Re-encrypt the vault under a new key."""
    result = _run(_call(ctx, "rekey", _sources(ctx), new_key=new_key))
    console.print(f"\n  [green]Vault re-encrypted:[/] {result.vault_path.name}")
    if result.key_saved_to:
        console.print(f"  New key saved to {result.key_saved_to}")
    else:
        console.print("  [yellow]Update the key wherever it is stored:[/]")
        click.echo(result.key)
    console.print("  Share the new key with your team.\n")


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@cli.group()
def audit():
    """Inspect and maintain the audit log."""


def _vault(ctx) -> VaultOrchestrator:
    return VaultOrchestrator(ctx.obj["config"])


def _ledger(ctx) -> AuditLog:
    return AuditLog(ctx.obj["config"].audit_path(ctx.obj["cwd"]))


@audit.command("verify")
@click.pass_context
def audit_verify(ctx):
    """Verify the hash chain, archives included."""
    vault = _vault(ctx)
    try:
        checked = vault.verify_audit(ctx.obj["cwd"])
    finally:
        vault.close()
    match checked:
        case Ok(total):
            console.print(f"\n  [green]Audit chain intact[/] ({total} entries)\n")
        case Err(err):
            _fail(err)


@audit.command("rotate")
@click.option("--days", default=90, type=click.IntRange(min=0), help="Archive entries older than this.")
@click.pass_context
def audit_rotate(ctx, days):
    """Archive old audit entries."""
    vault = _vault(ctx)
    try:
        rotated = vault.rotate_audit(ctx.obj["cwd"], utcnow() - timedelta(days=days))
    finally:
        vault.close()
    match rotated:
        case Ok(result) if result.archived:
            console.print(
                f"\n  [green]Archived[/] {result.archived} entries to "
                f"{result.archive_path.name}, {result.remaining} kept\n"
            )
        case Ok(_):
            console.print("\n  [dim]Nothing to rotate.[/]\n")
        case Err(err):
            _fail(err)


@audit.command("show")
@click.option("--operation", "-o", multiple=True, help="Filter by operation.")
@click.option("--actor", default=None, help="Filter by actor.")
@click.option("--limit", default=20, help="Most recent entries to show.")
@click.pass_context
def audit_show(ctx, operation, actor, limit):
    """Show audit entries."""
    log = _ledger(ctx)
    try:
        entries = log.query(
            operation=list(operation) or None, actor=actor, limit=limit
        )
    except VaultError as err:
        _fail(err)
    except ValueError as err:
        raise click.BadParameter(str(err), param_hint="--operation") from err
    if not entries:
        console.print("\n  [dim]No audit entries.[/]\n")
        return
    table = Table(title="Audit Log")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Timestamp")
    table.add_column("Operation", style="bold")
    table.add_column("Actor")
    table.add_column("Digest", style="dim")
    for e in entries:
        table.add_row(
            str(e.sequence), e.timestamp, e.operation.value,
            e.actor or "unknown", e.payload_digest[:12],
        )
    console.print()
    console.print(table)
    console.print()


@audit.command("export")
@click.option("--format", "fmt", default="json", type=click.Choice(["json", "csv", "text"]))
@click.option("--output", "-o", default=None, type=click.Path(dir_okay=False), help="Write to a file.")
@click.pass_context
def audit_export(ctx, fmt, output):
    """Export the audit log."""
    log = _ledger(ctx)
    try:
        data = log.export(fmt)
    except VaultError as err:
        _fail(err)
    if output:
        Path(output).write_text(data, encoding="utf-8")
        console.print(f"  Exported to {output}")
    else:
        click.echo(data)


if __name__ == "__main__":
    cli()
