"""Shared helpers for the CLI command modules.

The Rich console, orchestrator construction, and the coroutine runner
that turns bt-mut errors into a red message and exit code 1.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Awaitable, TypeVar

from pydantic import ValidationError
from rich.console import Console

from ..config import BtMutConfig
from ..errors import BtMutError
from ..local_engine import LocalEngine
from ..orchestrator import SyncOrchestrator

console = Console()
logger = logging.getLogger("btmut.cli")

T = TypeVar("T")


def build_orchestrator(config: BtMutConfig) -> SyncOrchestrator:
    """Orchestrator over the loopback engine described by `config`."""
    return SyncOrchestrator(LocalEngine(config.engine_store), config)


def run(coro: Awaitable[T]) -> T:
    """Run a command coroutine, exiting 1 on any bt-mut error."""
    try:
        return asyncio.run(coro)
    except BtMutError as exc:
        console.print(f"[bold red]{type(exc).__name__}:[/] {exc}")
        sys.exit(1)
    except ValidationError as exc:
        console.print(f"[bold red]Invalid options:[/] {exc.errors()[0]['msg']}")
        sys.exit(1)
