#!/usr/bin/env python3
"""Runnable demo: keep an in-memory copy of s_config in sync with the table.

Prerequisites:
    psql -f examples/schema.sql
    change-relay install examples/demo-listener.yaml
    python examples/config_cache_demo.py

Then, from another shell:
    psql -c "UPDATE s_config SET config_value = 'true' WHERE config_key = 'debug_mode'"
"""

from __future__ import annotations

import asyncio
import contextlib

from rich.console import Console

from change_relay.config.loader import load_listener_config
from change_relay.events import Operation
from change_relay.handlers import LoggingHandler, RowCache
from change_relay.listener import ChangeListener
from change_relay.observability.logs import configure_logging

console = Console()


async def main() -> None:
    config = load_listener_config(
        overrides={
            "listener_id": "config-cache-demo",
            "database": {"port": 5433, "password": "post123", "sslmode": "disable"},
        }
    )
    configure_logging(config.logging)

    configs = RowCache("s_config", key_field="config_key")
    listener = ChangeListener(config)
    listener.register_handler("s_config", configs)
    listener.register_handler("s_user", LoggingHandler("s_user"))

    def print_debug_flag(operation: Operation, data: str) -> None:
        row = configs.get("debug_mode")
        console.print(f"[cyan]{operation}[/cyan] debug_mode={row and row['config_value']}")

    # A closure works as a consumer too; this one watches a second table.
    listener.register_handler("s_feature", print_debug_flag)

    console.print("[dim]Press Ctrl+C to stop[/dim]\n")
    try:
        await listener.start()
    finally:
        console.print(f"cached configs: {sorted(configs.snapshot())}")


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
