from __future__ import annotations

import dataclasses
import json
import logging
import time
from datetime import datetime
from pathlib import Path

import typer

from .config import IndexConfig
from .errors import QueueUnavailableError
from .indexer.queue import JobQueue
from .models import Action, Granularity, IndexingJob

app = typer.Typer(add_completion=False, no_args_is_help=True)


def _cfg(config: str) -> IndexConfig:
    path = Path(config)
    if not path.is_file():
        raise typer.BadParameter(f"Config file not found: {config}")
    try:
        return IndexConfig.from_toml(path)
    except (KeyError, ValueError) as e:
        raise typer.BadParameter(f"Invalid config {config}: {e}") from e


def _queue(cfg: IndexConfig) -> JobQueue:
    q = JobQueue.from_config(cfg)
    try:
        q.init()
    except QueueUnavailableError as e:
        typer.echo(f"Queue unavailable: {e}", err=True)
        raise typer.Exit(code=1) from e
    return q


def _setup_logging(log_file: str | None, log_level: str, verbose: bool) -> None:
    """Configure logging for long-running commands."""
    level = logging.DEBUG if verbose else getattr(logging, log_level.upper(), logging.INFO)

    # Format with timestamp for auditability
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(fmt, datefmt))
    handlers.append(console)

    if log_file:
        from logging.handlers import RotatingFileHandler
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(logging.Formatter(fmt, datefmt))
        handlers.append(file_handler)

    logger = logging.getLogger("courseindex")
    logger.setLevel(level)
    for h in handlers:
        logger.addHandler(h)


@app.command()
def init(content: str = typer.Option(..., help="Content root path"),
         index: str = typer.Option(..., help="Index directory"),
         out: str = typer.Option("config.toml", help="Write example config to this path")):
    """Write a starter config.toml."""
    outp = Path(out)
    outp.write_text(f"""[content]
root = "{content}"
ignore = [".git/**", "**/.git/**", "**/node_modules/**", "**/*.test.*", "**/*.spec.*"]
max_depth = 5
extensions = [".md", ".json", ".txt"]

[index]
dir = "{index}"

[layout]
group_pattern = "^module-[\\\\w.-]+$"
item_pattern = "^lesson-(\\\\d+-\\\\d+)\\\\.(?:md|json|txt)$"
index_filenames = ["index.json", "index.md"]

[priority]
index = 10
item = 5
other = 1
manual = 20
replay = 15

[watcher]
debounce_ms = 5000

[queue]
concurrency = 3
max_attempts = 3
collection_max_attempts = 5
backoff_base_ms = 5000

[chunking]
chunk_size = 1000
chunk_overlap = 200

[embeddings]
provider = "sentence_transformers"
model = "BAAI/bge-small-en-v1.5"
batch_size = 16
device = "cpu"

[maintenance]
cleanup_interval_s = 3600
cleanup_horizon_hours = 24

[logging]
level = "INFO"
""", encoding="utf-8")
    typer.echo(f"Wrote {outp}")


@app.command()
def watch(config: str = typer.Option("config.toml"),
          log_file: str = typer.Option(None, "--log-file", "-l", help="Log file path for audit trail"),
          log_level: str = typer.Option(None, "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR"),
          verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging"),
          no_reconcile: bool = typer.Option(False, "--no-reconcile", help="Skip queueing every collection on start")):
    """Watch the content tree and index changes until interrupted."""
    from .service import IndexingService

    cfg = _cfg(config)
    effective_log_file = log_file or cfg.log_file
    if effective_log_file:
        effective_log_file = effective_log_file.replace("{date}", datetime.now().strftime("%Y%m%d"))
    _setup_logging(effective_log_file, log_level or cfg.log_level, verbose)

    if no_reconcile:
        cfg = dataclasses.replace(cfg, reconcile_on_start=False)

    service = IndexingService(cfg)
    service.start(watch=True)
    typer.echo(f"Watching {cfg.content_root} for changes. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        typer.echo("Stopping...")
    finally:
        service.close()


@app.command()
def reindex(collection: str, config: str = typer.Option("config.toml")):
    """Queue a full reindex of COLLECTION at manual priority."""
    cfg = _cfg(config)
    q = _queue(cfg)
    try:
        handle = q.enqueue(IndexingJob(
            granularity=Granularity.COLLECTION,
            action=Action.REINDEX,
            collection_id=collection,
            priority=cfg.priority_manual,
        ))
    except QueueUnavailableError as e:
        typer.echo(f"Queue unavailable: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        q.close()
    typer.echo(f"Queued reindex of {collection} as job {handle.job_id}")


@app.command()
def stats(config: str = typer.Option("config.toml"),
          collection: str = typer.Option(None, help="Also show vector store counts for this collection")):
    """Show queue counts."""
    cfg = _cfg(config)
    q = _queue(cfg)
    try:
        s = q.stats()
    finally:
        q.close()
    out = dataclasses.asdict(s)
    if collection:
        from .store.sqlite_store import SqliteVectorStore
        store = SqliteVectorStore(cfg.store_path)
        store.init()
        try:
            out["store"] = store.status(collection)
        finally:
            store.close()
    typer.echo(json.dumps(out, indent=2))


@app.command(name="dead-letters")
def dead_letters(config: str = typer.Option("config.toml"),
                 limit: int = typer.Option(10, help="Number of entries, newest first"),
                 trace: bool = typer.Option(False, help="Include error traces")):
    """List dead-lettered jobs."""
    cfg = _cfg(config)
    q = _queue(cfg)
    try:
        entries = q.list_dead_letters(limit)
    finally:
        q.close()
    results = []
    for i, e in enumerate(entries):
        item = {
            "index": i,
            "job": e.original_job.to_dict(),
            "error": e.error_message,
            "failed_at": datetime.fromtimestamp(e.failed_at).isoformat(timespec="seconds"),
        }
        if trace:
            item["trace"] = e.error_trace
        results.append(item)
    typer.echo(json.dumps(results, indent=2))


@app.command()
def replay(index: int, config: str = typer.Option("config.toml")):
    """Resubmit the dead letter at INDEX (0 = newest)."""
    cfg = _cfg(config)
    q = _queue(cfg)
    try:
        handle = q.replay_dead_letter(index)
    finally:
        q.close()
    if handle is None:
        typer.echo(f"No dead letter at index {index}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Replayed dead letter {index} as job {handle.job_id}")


@app.command()
def pause(config: str = typer.Option("config.toml")):
    """Stop workers from claiming jobs until `resume`, across service restarts."""
    cfg = _cfg(config)
    q = _queue(cfg)
    try:
        q.pause()
    finally:
        q.close()
    typer.echo("Queue paused")


@app.command()
def resume(config: str = typer.Option("config.toml")):
    """Let workers claim jobs again."""
    cfg = _cfg(config)
    q = _queue(cfg)
    try:
        q.resume()
    finally:
        q.close()
    typer.echo("Queue resumed")


@app.command()
def clean(config: str = typer.Option("config.toml"),
          older_than_hours: float = typer.Option(None, help="Horizon (default: from config)")):
    """Remove finished job records older than the horizon."""
    cfg = _cfg(config)
    q = _queue(cfg)
    try:
        removed = q.clean_completed(older_than_hours if older_than_hours is not None else cfg.cleanup_horizon_hours)
    finally:
        q.close()
    typer.echo(f"Removed {removed} jobs")


if __name__ == "__main__":
    app()
