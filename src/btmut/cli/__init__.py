"""
bt-mut CLI -- sync a folder with a mutable torrent.

The main Click group lives here. Command groups live in their own
modules and are attached through register functions.

Entry point: btmut.cli:main
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click

from .. import __version__
from ..config import load_config


@click.group()
@click.version_option(version=__version__, prog_name="bt-mut")
@click.option(
    "--config", "config_path", default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file. Defaults to config.yaml in the bt-mut config folder.",
)
@click.option(
    "--secret-storage", default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Where secret keys are stored. Defaults to the user config folder.",
)
@click.option(
    "--store", default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Loopback engine store. Defaults to the user data folder.",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[Path],
    secret_storage: Optional[Path],
    store: Optional[Path],
    verbose: bool,
):
    """bt-mut -- keep a folder in sync with a mutable torrent."""
    config = load_config(
        config_path, secret_storage=secret_storage, engine_store=store
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else config.log_level.upper(),
        format="%(name)s: %(message)s",
    )
    ctx.obj = config


# ---------------------------------------------------------------------------
# Register command groups from their modules
# ---------------------------------------------------------------------------

from .sync_cmd import register_sync_commands
from .keys import register_keys_commands

register_sync_commands(main)
register_keys_commands(main)
