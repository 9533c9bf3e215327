#!/usr/bin/env python3
"""
Operator commands for the MIKO keeper.
"""

import asyncio
import sys
import time
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from miko_keeper.core.config import load_settings
from miko_keeper.core.database import Database
from miko_keeper.core.logging import setup_logging
from miko_keeper.services.blockchain.solana_ledger import SolanaLedgerAccessor
from miko_keeper.services.distribution.executor import DistributionExecutor
from miko_keeper.services.fees.fee_schedule import seconds_until_next_update
from miko_keeper.services.state_store import SqlStateStore

console = Console()
app = typer.Typer(help="MIKO keeper management commands")


async def _open_store():
    settings = load_settings()
    setup_logging(settings)
    database = Database(settings.database_url)
    await database.init()
    return settings, database, SqlStateStore(database)


@app.command("init-db")
def init_db():
    """Create the keeper state tables."""
    async def _init():
        _, database, _ = await _open_store()
        await database.create_tables()
        await database.close()
        console.print("✅ Keeper database initialized")

    asyncio.run(_init())


@app.command()
def status():
    """Show persisted keeper state."""
    async def _status():
        settings, database, store = await _open_store()
        try:
            schedule = await store.load_fee_schedule()
            rollovers = await store.list_rollovers()
            pending = await store.get_pending_proceeds(settings.reward_asset)
            unresolved = await store.count_unresolved_failed_transfers()
            last = await store.last_cycle()
        finally:
            await database.close()

        table = Table(title="Keeper Status")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Fee rate (bps)", str(schedule.current_rate_bps))
        table.add_row("Fee finalized", "yes" if schedule.finalized else "no")
        table.add_row("Launch timestamp", str(schedule.launch_timestamp or "unknown"))
        if not schedule.finalized and schedule.launch_timestamp:
            table.add_row(
                "Next fee update in (s)",
                str(seconds_until_next_update(int(time.time()), schedule.launch_timestamp)),
            )
        table.add_row("Reward asset", settings.reward_asset)
        table.add_row("Pending proceeds", str(pending))
        table.add_row("Unresolved failed transfers", str(unresolved))
        if last:
            table.add_row("Last cycle", f"#{last['id']} {last['outcome']} at {last['stage']}")
            if last["error_message"]:
                table.add_row("Last cycle error", last["error_message"])
        console.print(table)

        if rollovers:
            rollover_table = Table(title="Rollover")
            rollover_table.add_column("Reward asset", style="cyan")
            rollover_table.add_column("Amount", justify="right")
            rollover_table.add_column("Updated")
            rollover_table.add_column("Stale")
            for state in rollovers:
                rollover_table.add_row(
                    state.reward_asset_id,
                    str(state.amount),
                    str(state.last_updated or ""),
                    "yes" if state.reward_asset_id != settings.reward_asset else "",
                )
            console.print(rollover_table)

    asyncio.run(_status())


@app.command("failed-transfers")
def failed_transfers(all_records: bool = typer.Option(False, "--all", help="Include resolved records")):
    """List failed distribution transfers."""
    async def _list():
        _, database, store = await _open_store()
        try:
            records = await store.list_failed_transfers(unresolved_only=not all_records)
        finally:
            await database.close()

        if not records:
            console.print("✅ No failed transfers")
            return

        table = Table(title="Failed Transfers")
        table.add_column("ID", justify="right")
        table.add_column("Cycle", justify="right")
        table.add_column("Recipient", style="cyan")
        table.add_column("Asset")
        table.add_column("Amount", justify="right")
        table.add_column("Error", style="red")
        table.add_column("Resolved")
        for record in records:
            table.add_row(
                str(record["id"]),
                str(record["cycle_id"] or ""),
                record["recipient"],
                record["reward_asset"],
                str(record["amount"]),
                (record["error_message"] or "")[:60],
                record["resolution_tx"] or ("yes" if record["resolved"] else ""),
            )
        console.print(table)

    asyncio.run(_list())


@app.command("retry-failed")
def retry_failed(transfer_id: Optional[int] = typer.Option(None, "--id", help="Retry a single record")):
    """Resend unresolved failed transfers and mark the confirmed ones resolved."""
    confirm = typer.confirm("Resend failed transfers from the keeper account?")
    if not confirm:
        console.print("❌ Operation cancelled")
        return

    async def _retry():
        settings, database, store = await _open_store()
        ledger = SolanaLedgerAccessor(settings)
        try:
            records = await store.list_failed_transfers(unresolved_only=True)
            if transfer_id is not None:
                records = [r for r in records if r["id"] == transfer_id]
            if not records:
                console.print("Nothing to retry")
                return

            await ledger.initialize()
            executor = DistributionExecutor(
                ledger,
                call_timeout=settings.call_timeout_seconds,
                max_retries=settings.max_retries,
                retry_delay=settings.retry_delay_seconds,
            )
            failures = 0
            for record in records:
                outcome = await executor.retry_failed(record)
                if outcome.success:
                    await store.resolve_failed_transfer(record["id"], outcome.tx_id)
                    console.print(f"✅ #{record['id']} sent: {outcome.tx_id}")
                else:
                    failures += 1
                    console.print(f"❌ #{record['id']} failed: {outcome.error}")
        finally:
            await ledger.close()
            await database.close()

        if failures:
            sys.exit(1)

    asyncio.run(_retry())


@app.command("resolve-failed")
def resolve_failed(
    transfer_id: int,
    resolution_tx: Optional[str] = typer.Option(None, "--tx", help="Signature of the manual payout"),
):
    """Mark a failed transfer as resolved."""
    async def _resolve():
        _, database, store = await _open_store()
        try:
            resolved = await store.resolve_failed_transfer(transfer_id, resolution_tx)
        finally:
            await database.close()

        if resolved:
            console.print(f"✅ Failed transfer #{transfer_id} resolved")
        else:
            console.print(f"❌ Failed transfer #{transfer_id} not found or already resolved")
            sys.exit(1)

    asyncio.run(_resolve())


if __name__ == "__main__":
    app()
