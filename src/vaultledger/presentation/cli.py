import asyncio, json
from collections import Counter
from datetime import timedelta
from typing import Optional

import typer
from rich.panel import Panel
from rich.progress import (
    BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn, TimeRemainingColumn,
)
from rich.table import Table

from ..adapters.manifest_jsonl import JSONLScanJournal
from ..adapters.parquet_sink import ParquetSnapshotSink
from ..application.planning import plan_chunks, validate_range
from ..application.service import Wiring, build_service
from ..application.utils import format_units, parse_day, utc_today
from ..config import Settings, vault_by_id
from ..domain.errors import IndexerError
from ..logging_setup import configure_logging, console

app = typer.Typer(help="vaultledger: multi-chain vault deposit/withdrawal indexer.", no_args_is_help=True)


def _settings(env_file: Optional[str], log_level: Optional[str]) -> Settings:
    s = Settings.from_env(env_file)
    configure_logging(log_level or s.log_level)
    return s


def _run(settings: Settings, fn, *, connect: bool = True):
    """Build the service, run one coroutine against it and always release the RPC clients."""
    async def main():
        w: Wiring = build_service(settings)
        try:
            if connect:
                await w.pool.connect()
            return await fn(w)
        finally:
            await w.service.aclose()
    try:
        return asyncio.run(main())
    except IndexerError as e:
        console.print(f"[red]{type(e).__name__}[/red]: {e}")
        raise typer.Exit(code=1)


@app.command()
def serve(
    env_file: Optional[str] = typer.Option(None, help=".env file to load"),
    host: Optional[str] = None,
    port: Optional[int] = None,
    log_level: Optional[str] = None,
):
    """Run the HTTP API with the polling and daily snapshot loops."""
    import uvicorn
    from .api import create_app

    s = _settings(env_file, log_level)
    w = build_service(s)
    api = create_app(w.service, cors_origins=s.cors_origins, run_loops=True)
    console.print(Panel.fit(f"vaults: {', '.join(v.id for v in w.service.vaults)}\n"
                            f"db: {s.db_url}\npoll: {s.poll_interval}s", title="vaultledger"))
    uvicorn.run(api, host=host or s.api_host, port=port or s.api_port, log_config=None)


@app.command()
def backfill(
    from_block: int,
    to_block: int,
    vault: Optional[str] = typer.Option(None, help="vault id; all vaults when omitted"),
    env_file: Optional[str] = None,
    log_level: Optional[str] = None,
):
    """Re-scan a block range and apply it idempotently, with a live progress bar."""
    s = _settings(env_file, log_level)

    async def go(w: Wiring):
        rng = validate_range(from_block, to_block)
        chunks = plan_chunks(rng.start, rng.end, s.log_step)
        totals: dict[str, Counter] = {}
        with Progress(
            SpinnerColumn(), TextColumn("[bold]backfill[/bold]"), BarColumn(), MofNCompleteColumn(),
            TextColumn("chunks"), TimeElapsedColumn(), TimeRemainingColumn(), console=console,
        ) as progress:
            task = progress.add_task("backfill", total=len(chunks))
            for c in chunks:
                for vid, stats in (await w.service.backfill(c.start, c.end, vault)).items():
                    totals.setdefault(vid, Counter()).update(stats)
                progress.advance(task)
        return {vid: dict(t) for vid, t in totals.items()}
    res = _run(s, go)
    for vid, stats in res.items():
        console.print(f"[bold]{vid}[/bold] {json.dumps(stats, sort_keys=True)}")


@app.command()
def snapshot(
    date: Optional[str] = typer.Argument(None, help="YYYY-MM-DD (UTC); yesterday when omitted"),
    vault: Optional[str] = None,
    env_file: Optional[str] = None,
    log_level: Optional[str] = None,
):
    """Compute the daily snapshot for one date."""
    s = _settings(env_file, log_level)
    day = parse_day(date) if date else utc_today() - timedelta(days=1)

    async def go(w: Wiring):
        vaults = w.service.select_vaults(vault)
        return [await w.service.snapshots.compute_daily_snapshot(v, day) for v in vaults], vaults
    _print_snapshots(*_run(s, go))


@app.command()
def recompute(
    start: str,
    end: str,
    vault: Optional[str] = None,
    env_file: Optional[str] = None,
    log_level: Optional[str] = None,
):
    """Rebuild snapshots for [start, end] from stored flows."""
    s = _settings(env_file, log_level)

    async def go(w: Wiring):
        vaults = w.service.select_vaults(vault)
        out = []
        for v in vaults:
            out += await w.service.snapshots.recompute_range(v, start, end)
        return out, vaults
    _print_snapshots(*_run(s, go))


@app.command()
def reconcile(
    vault: Optional[str] = None,
    env_file: Optional[str] = None,
    log_level: Optional[str] = None,
):
    """Replace past flow-based AUM with on-chain balances of product users."""
    s = _settings(env_file, log_level)

    async def go(w: Wiring):
        vaults = w.service.select_vaults(vault)
        out = []
        for v in vaults:
            out += await w.service.snapshots.reconcile(v)
        return out, vaults
    _print_snapshots(*_run(s, go))


@app.command("export-snapshots")
def export_snapshots(
    out_dir: str = "snapshots_parquet",
    vault: Optional[str] = None,
    limit: int = 10_000,
    env_file: Optional[str] = None,
):
    """Write stored snapshots to a Parquet file."""
    s = _settings(env_file, None)
    w = build_service(s)
    if vault:
        vault_by_id(w.service.vaults, vault)
    snaps = w.store.list_snapshots(vault_id=vault, limit=limit)
    path = ParquetSnapshotSink(out_dir).write(snaps, name=vault or "snapshots")
    console.print(f"wrote {len(snaps)} snapshots to [bold]{path}[/bold]")
    asyncio.run(w.pool.aclose())


@app.command()
def status(
    env_file: Optional[str] = None,
    journal_tail: int = typer.Option(0, help="show the last N scan journal entries"),
):
    """Show per-chain cursors and configured endpoints."""
    s = _settings(env_file, None)
    w = build_service(s)
    st = w.service.status()
    t = Table(title="chains")
    t.add_column("chain"); t.add_column("last processed block", justify="right"); t.add_column("endpoints")
    for chain, info in st["chains"].items():
        lpb = info["last_processed_block"]
        t.add_row(chain, "-" if lpb is None else str(lpb), "\n".join(info["endpoints"]))
    console.print(t)
    if journal_tail and s.journal_path:
        for rec in JSONLScanJournal(s.journal_path).read()[-journal_tail:]:
            console.print(f"{rec.vault_id} {rec.from_block}-{rec.to_block} {rec.status} "
                          f"logs={rec.logs} decoded={rec.decoded} failures={len(rec.failures)}"
                          + (f" error={rec.error}" if rec.error else ""))
    asyncio.run(w.pool.aclose())


def _print_snapshots(snaps, vaults) -> None:
    decimals = {v.id: v.asset.decimals for v in vaults}
    t = Table(title="snapshots")
    for col in ("date", "vault", "deposits", "withdrawals", "aum", "method"):
        t.add_column(col, justify="left" if col in ("date", "vault", "method") else "right")
    for sn in snaps:
        d = decimals.get(sn.vault_id, 0)
        t.add_row(sn.date, sn.vault_id, *(format_units(int(x), d) for x in
                                          (sn.total_deposits, sn.total_withdrawals, sn.total_assets)), sn.method)
    console.print(t)


if __name__ == "__main__":
    app()
