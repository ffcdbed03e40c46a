"""Sync commands: sync, push, pull, status."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel

from ._common import build_orchestrator, console, run
from .. import magnet, pointer
from ..config import BtMutConfig
from ..engine import EVENT_DONE, EVENT_DOWNLOAD, EVENT_WIRE, TorrentHandle
from ..errors import MalformedIdentifierError
from ..keyvault import KeyVault
from ..models import SyncOptions
from ..sequence import SequenceGuard

PATH_OPTION = click.option(
    "--path", "-p", default=".",
    type=click.Path(file_okay=False, path_type=Path),
    help="Where to sync the torrent. Defaults to the current folder.",
)


async def _follow(handle: TorrentHandle) -> None:
    """Print engine events until the torrent reports done."""
    async for event in handle.events():
        if event.kind == EVENT_WIRE:
            console.print("  [dim]Got peer[/]")
        elif event.kind == EVENT_DOWNLOAD:
            console.print(f"  [dim]Received {event.detail.get('path', '?')}[/]")
        elif event.kind == EVENT_DONE:
            console.print("  [green]Finished sync, seeding[/]")


async def _sync(
    config: BtMutConfig,
    torrent: Optional[str],
    path: Path,
    options: SyncOptions,
    follow: bool,
) -> TorrentHandle:
    orchestrator = build_orchestrator(config)
    try:
        initialized = await orchestrator.is_initialized(path)

        if torrent:
            console.print(f"\n  Syncing [cyan]{torrent}[/] to {path}")
        elif not initialized:
            console.print(f"\n  Turning [cyan]{path}[/] into a torrent")
        else:
            console.print(f"\n  Syncing torrent in [cyan]{path}[/]")

        handle = await orchestrator.sync(path, torrent, options)

        if torrent:
            console.print("  Resolved magnet, performing sync")
        else:
            if not initialized:
                console.print("  Generated magnet:")
            console.print(f"  [bold]{handle.magnet_uri}[/]")
        if handle.sequence is not None:
            console.print(f"  [dim]Sequence: {handle.sequence}[/]")

        if follow:
            await _follow(handle)
        console.print()
        return handle
    finally:
        await orchestrator.close()


async def _push(
    config: BtMutConfig,
    path: Path,
    seed: Optional[str],
    public_key: Optional[str],
    secret_key: Optional[str],
) -> TorrentHandle:
    options = SyncOptions(seed=seed, public_key=public_key, secret_key=secret_key)
    orchestrator = build_orchestrator(config)
    try:
        handle = await orchestrator.push(path, options)
        console.print(f"\n  [green]Published[/] {handle.info_hash} (sequence {handle.sequence})")
        console.print(f"  [bold]{handle.magnet_uri}[/]\n")
        return handle
    finally:
        await orchestrator.close()


async def _pull(
    config: BtMutConfig,
    torrent: Optional[str],
    path: Path,
    follow: bool,
) -> TorrentHandle:
    orchestrator = build_orchestrator(config)
    try:
        handle = await orchestrator.pull(path, torrent)
        console.print(
            f"\n  [green]Synced[/] {len(handle.files)} file(s) at {handle.info_hash}"
        )
        console.print(f"  [bold]{handle.magnet_uri}[/]")
        if follow:
            await _follow(handle)
        console.print()
        return handle
    finally:
        await orchestrator.close()


def register_sync_commands(main: click.Group) -> None:
    """Register sync, push, pull and status on the main CLI group."""

    @main.command("sync")
    @click.argument("torrent", required=False)
    @PATH_OPTION
    @click.option("--seed", default=None, help="Derive the keypair from this seed.")
    @click.option("--follow", is_flag=True, help="Stay attached and print engine events.")
    @click.pass_obj
    def sync_cmd(config, torrent, path, seed, follow):
        """Sync your folder with a torrent.

        With a magnet link, pull it into the folder. Without one, let the
        folder's .bt file decide: publish, update, or pull.
        """
        run(_sync(config, torrent, path, SyncOptions(seed=seed), follow))

    @main.command("push")
    @PATH_OPTION
    @click.option("--seed", default=None, help="Derive the keypair from this seed.")
    @click.option("--public-key", default=None, help="Hex public key (with --secret-key).")
    @click.option("--secret-key", default=None, help="Hex secret key (with --public-key).")
    @click.pass_obj
    def push_cmd(config, path, seed, public_key, secret_key):
        """Publish the folder's current contents as a new version."""
        run(_push(config, path, seed, public_key, secret_key))

    @main.command("pull")
    @click.argument("torrent", required=False)
    @PATH_OPTION
    @click.option("--follow", is_flag=True, help="Stay attached and print engine events.")
    @click.pass_obj
    def pull_cmd(config, torrent, path, follow):
        """Fetch the latest published snapshot into the folder."""
        run(_pull(config, torrent, path, follow))

    @main.command("status")
    @PATH_OPTION
    @click.pass_obj
    def status_cmd(config, path):
        """Show what the folder tracks and whether you own it."""
        directory = path.expanduser().resolve()
        if not pointer.exists(directory):
            console.print(f"\n  [yellow]{directory} is not tracked.[/] Run [cyan]bt-mut sync[/] to publish it.\n")
            return

        identifier = pointer.read(directory)
        try:
            info = magnet.decode(identifier)
        except MalformedIdentifierError as exc:
            console.print(f"[bold red]Corrupt .bt file:[/] {exc}")
            sys.exit(1)

        lines = [f"Magnet: [cyan]{identifier}[/]"]
        lines.append(f"Snapshot: {info.info_hash or '[dim]not published yet[/]'}")
        if info.is_owned:
            owned = KeyVault(config.secret_storage).has(info.public_key)
            latest = SequenceGuard(config.state_dir).latest(info.public_key)
            lines.append("Type: [magenta]mutable[/]")
            lines.append(f"Owner key: {info.public_key.hex()}")
            lines.append(
                "Secret key: " + ("[green]stored (you can push)[/]" if owned else "[yellow]not stored (read-only)[/]")
            )
            lines.append(f"Last sequence: {latest if latest is not None else '[dim]none seen[/]'}")
        else:
            lines.append("Type: [blue]immutable[/]")

        console.print()
        console.print(Panel("\n".join(lines), title=str(directory), border_style="bright_blue"))
        console.print()

