import asyncio
import random
import time
import uuid
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from username_index.errors import UsernameIndexError
from username_index.registration import register_username
from username_index.schemas import IndexConfig, IndexStats
from username_index.service import ExistenceIndexService
from username_index.store import SqliteUserStore
from username_index.utils import load_config, normalize_username

app = typer.Typer()
console = Console()

DEFAULT_DB = Path("data") / "users.db"
SEED_BATCH_SIZE = 100
SEED_MAX = 5000

def setup_logging():
    logger.remove()
    # Only log to file to keep the console output clean
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)
    logger.add(
        log_dir / "username_index.log",
        rotation="5 MB",
        retention="7 days",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {module}:{function}:{line} - {message}"
    )

def read_config(config_path: Optional[str]) -> IndexConfig:
    if not config_path:
        return IndexConfig()
    if not Path(config_path).exists():
        console.print(f"[bold red]Config file not found: {config_path}[/bold red]")
        raise typer.Exit(code=1)
    try:
        return IndexConfig(**load_config(config_path))
    except Exception as e:
        logger.exception(f"Config Validation Error: {e}")
        console.print(f"[bold red]Config Validation Error:[/bold red] {e}")
        raise typer.Exit(code=1)

def generate_dashboard(stats: IndexStats, title: str = "Username Index") -> Table:
    table = Table(title=f"🌸 {title}")
    table.add_column("Metric", style="cyan", width=30)
    table.add_column("Value", style="magenta", width=20)

    table.add_row("Initialized", "[green]yes[/green]" if stats.initialized else "[red]no[/red]")
    table.add_row("Capacity", str(stats.capacity))
    table.add_row("Inserted (approx.)", str(stats.inserted_count))
    table.add_row("Saturation", f"{stats.saturation:.2%}")
    table.add_row("Bits / Hashes", f"{stats.bit_size} / {stats.hash_count}")
    table.add_row("Fill Ratio", f"{stats.fill_ratio:.2%}")
    table.add_row("Est. False Positive Rate", f"{stats.estimated_false_positive_rate:.4%}")
    table.add_row("Rebuilds", str(stats.rebuild_count))
    table.add_row("Checks", str(stats.checks))
    table.add_row("Answered by Filter", f"[bold green]{stats.fast_path_hits}[/bold green]")
    table.add_row("Store Lookups", str(stats.store_lookups))
    table.add_row("False Positives", f"[yellow]{stats.false_positives}[/yellow]")

    return table

async def open_index(db: Path, config: IndexConfig) -> Tuple[SqliteUserStore, ExistenceIndexService]:
    store = SqliteUserStore(db)
    await store.initialize()
    service = ExistenceIndexService(store, config)
    await service.initialize()
    return store, service

async def close_index(store: SqliteUserStore, service: ExistenceIndexService):
    await service.close()
    await store.close()

def run(coro):
    """Runs a command coroutine, turning index errors into a console message."""
    try:
        return asyncio.run(coro)
    except UsernameIndexError as e:
        logger.error(f"{type(e).__name__}: {e}")
        console.print(f"[bold red]{type(e).__name__}:[/bold red] {e}")
        raise typer.Exit(code=1)
    except Exception as e:
        logger.exception(f"Fatal Error: {e}")
        console.print("[bold red]Fatal Error:[/bold red] Check logs for details.")
        raise typer.Exit(code=1)

async def check_async(username: str, db: Path, config: IndexConfig):
    store, service = await open_index(db, config)
    try:
        started = time.perf_counter()
        might_exist = service.might_exist(username)
        filter_ms = (time.perf_counter() - started) * 1000

        store_ms = 0.0
        exists = False
        if might_exist:
            store_started = time.perf_counter()
            exists = await service.check_username_exists(username)
            store_ms = (time.perf_counter() - store_started) * 1000

        table = Table(title=f"🔎 {normalize_username(username)}")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="magenta")
        table.add_row("Available", "[green]yes[/green]" if not exists else "[red]no[/red]")
        table.add_row("Filter Result", "might_exist" if might_exist else "definitely_not_exists")
        table.add_row("Used Store", str(might_exist))
        table.add_row("Filter Time (ms)", f"{filter_ms:.3f}")
        table.add_row("Store Time (ms)", f"{store_ms:.3f}")
        console.print(table)
        return not exists
    finally:
        await close_index(store, service)

async def register_async(name: str, db: Path, config: IndexConfig) -> str:
    store, service = await open_index(db, config)
    try:
        return await register_username(service, store, name)
    finally:
        await close_index(store, service)

async def seed_async(count: int, db: Path, config: IndexConfig) -> int:
    store, service = await open_index(db, config)
    created = 0
    try:
        usernames = [f"testuser{i}" for i in range(1, count + 1)]
        for i in range(0, len(usernames), SEED_BATCH_SIZE):
            batch = usernames[i:i + SEED_BATCH_SIZE]
            created += await store.create_users(batch)
            for username in batch:
                service.add_username(username)
            logger.info(f"Seeded {min(i + SEED_BATCH_SIZE, count)}/{count} usernames")
        await service.wait_for_rebuild()
        console.print(generate_dashboard(service.get_stats(), "After Seeding"))
        return created
    finally:
        await close_index(store, service)

async def cleanup_async(db: Path, config: IndexConfig) -> int:
    store, service = await open_index(db, config)
    try:
        deleted = await store.delete_test_users()
        service.reset()
        await service.initialize()
        console.print(generate_dashboard(service.get_stats(), "After Cleanup"))
        return deleted
    finally:
        await close_index(store, service)

async def stats_async(db: Path, config: IndexConfig):
    store, service = await open_index(db, config)
    try:
        console.print(generate_dashboard(service.get_stats()))
    finally:
        await close_index(store, service)

async def bench_async(samples: int, db: Path, config: IndexConfig):
    store, service = await open_index(db, config)
    try:
        stored: List[str] = [u async for u in store.stream_all_usernames()]
        existing = random.sample(stored, min(len(stored), samples // 2))
        probes = existing + [f"probe_{uuid.uuid4().hex[:12]}" for _ in range(samples - len(existing))]
        random.shuffle(probes)

        before = service.get_stats()
        started = time.perf_counter()
        for probe in probes:
            await service.check_username_exists(probe)
        indexed_ms = (time.perf_counter() - started) * 1000
        after = service.get_stats()

        started = time.perf_counter()
        for probe in probes:
            await store.exists(normalize_username(probe))
        direct_ms = (time.perf_counter() - started) * 1000

        table = Table(title=f"⚡ {len(probes)} lookups")
        table.add_column("Method", style="cyan")
        table.add_column("Store Calls", style="magenta")
        table.add_column("Total (ms)", style="magenta")
        table.add_row("With index", str(after.store_lookups - before.store_lookups), f"{indexed_ms:.2f}")
        table.add_row("Store only", str(len(probes)), f"{direct_ms:.2f}")
        console.print(table)
    finally:
        await close_index(store, service)

@app.command()
def check(
    username: str,
    db: Path = typer.Option(DEFAULT_DB, help="SQLite user database"),
    config: Optional[str] = typer.Option(None, help="JSON index config")
):
    setup_logging()
    run(check_async(username, db, read_config(config)))

@app.command()
def register(
    name: str,
    db: Path = typer.Option(DEFAULT_DB, help="SQLite user database"),
    config: Optional[str] = typer.Option(None, help="JSON index config")
):
    setup_logging()
    username = run(register_async(name, db, read_config(config)))
    console.print(f"[bold green]Registered:[/bold green] {username}")

@app.command()
def seed(
    count: int = typer.Argument(1000),
    db: Path = typer.Option(DEFAULT_DB, help="SQLite user database"),
    config: Optional[str] = typer.Option(None, help="JSON index config")
):
    setup_logging()
    if count < 1 or count > SEED_MAX:
        console.print(f"[bold red]Count must be between 1 and {SEED_MAX}[/bold red]")
        raise typer.Exit(code=1)
    created = run(seed_async(count, db, read_config(config)))
    console.print(f"[bold green]{created} test users created[/bold green]")

@app.command()
def cleanup(
    db: Path = typer.Option(DEFAULT_DB, help="SQLite user database"),
    config: Optional[str] = typer.Option(None, help="JSON index config")
):
    setup_logging()
    deleted = run(cleanup_async(db, read_config(config)))
    console.print(f"[bold green]{deleted} test users removed, index reinitialized[/bold green]")

@app.command()
def stats(
    db: Path = typer.Option(DEFAULT_DB, help="SQLite user database"),
    config: Optional[str] = typer.Option(None, help="JSON index config")
):
    setup_logging()
    run(stats_async(db, read_config(config)))

@app.command()
def bench(
    samples: int = typer.Argument(1000),
    db: Path = typer.Option(DEFAULT_DB, help="SQLite user database"),
    config: Optional[str] = typer.Option(None, help="JSON index config")
):
    setup_logging()
    run(bench_async(samples, db, read_config(config)))

if __name__ == "__main__":
    app()
