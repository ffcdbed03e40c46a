"""Key commands: list the publications you can push to."""

from __future__ import annotations

import click
from rich.table import Table

from ._common import console
from ..keyvault import KeyVault
from ..sequence import SequenceGuard


def register_keys_commands(main: click.Group) -> None:
    """Register the keys command group."""

    @main.group()
    def keys():
        """Secret keys for the publications you own."""

    @keys.command("list")
    @click.pass_obj
    def keys_list(config):
        """List stored public keys and the last sequence seen for each."""
        vault = KeyVault(config.secret_storage)
        public_keys = vault.list_public_keys()
        if not public_keys:
            console.print(f"\n  [dim]No keys in {vault.secret_storage}[/]\n")
            return

        guard = SequenceGuard(config.state_dir)
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Public key", style="cyan", no_wrap=True)
        table.add_column("Last sequence")
        for key_hex in public_keys:
            try:
                latest = guard.latest(bytes.fromhex(key_hex))
            except ValueError:
                continue
            table.add_row(key_hex, "-" if latest is None else str(latest))

        console.print()
        console.print(table)
        console.print()
