from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from caresync.core.config import DEFAULT_CONFIG_PATH, load_config
from caresync.sync.conflicts import ConflictResolver, dumps_conflict
from caresync.sync.db import init_db
from caresync.web.security import get_allowed_nets, parse_nets

app = typer.Typer(add_completion=False)
console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml."""
    cfg = load_config(path)
    _print_json(cfg.model_dump())


@app.command("config-validate")
def config_validate(
    path: Path = DEFAULT_CONFIG_PATH,
    strict: bool = typer.Option(False, "--strict", help="Return non-zero when validation fails."),
):
    """Validate config and runtime prerequisites."""
    out: dict[str, Any] = {
        "ok": True,
        "checked_at": _now_iso(),
        "config_path": str(path),
        "checks": {
            "config_exists": path.exists(),
            "store_configured": False,
            "encryption_key_parent_ready": False,
            "database_parent_ready": False,
            "log_parent_ready": False,
            "backoff_valid": False,
            "allowed_nets_valid": False,
        },
        "warnings": [],
        "errors": [],
    }

    try:
        cfg = load_config(path)
    except Exception as e:
        out["ok"] = False
        out["errors"].append(f"load_config_failed: {e}")
        _print_json(out)
        if strict:
            raise typer.Exit(2)
        return

    checks = out["checks"]
    if cfg.store.backend == "rest":
        checks["store_configured"] = bool(cfg.store.base_url and cfg.store.api_key)
        if not checks["store_configured"]:
            out["errors"].append("rest_store_requires_base_url_and_api_key")
    else:
        checks["store_configured"] = True
        out["warnings"].append("memory_store_is_process_local")

    for key, target in (
        ("encryption_key_parent_ready", cfg.credentials.encryption_key_file),
        ("database_parent_ready", cfg.database.path),
        ("log_parent_ready", cfg.logging.file),
    ):
        try:
            Path(target).expanduser().parent.mkdir(parents=True, exist_ok=True)
            checks[key] = True
        except Exception as e:
            out["errors"].append(f"{key}_failed: {e}")

    checks["backoff_valid"] = cfg.sync.backoff_cap_sec >= cfg.sync.backoff_base_sec
    if not checks["backoff_valid"]:
        out["errors"].append("backoff_cap_below_base")
    if cfg.sync.periodic_interval_sec == 0:
        out["warnings"].append("periodic_sync_disabled")

    try:
        checks["allowed_nets_valid"] = bool(parse_nets(get_allowed_nets(cfg)))
        if not checks["allowed_nets_valid"]:
            out["errors"].append("allowed_nets_empty")
    except ValueError as e:
        out["errors"].append(str(e))

    out["ok"] = not out["errors"]
    _print_json(out)
    if strict and not out["ok"]:
        raise typer.Exit(2)


@app.command()
def status(user_id: Optional[str] = typer.Option(None, "--user-id", help="Limit counts to one user.")):
    """Show configuration and local queue summary."""
    cfg = load_config()
    init_db(cfg.database.path)

    from caresync.sync.queue import SyncQueue
    from caresync.sync.store import MemoryRecordStore

    # Read-only view over the local database; no store calls are made.
    queue = SyncQueue(cfg.database.path, MemoryRecordStore(), cfg.sync)
    resolver = ConflictResolver(cfg.database.path, cfg.sync)
    qstats = queue.stats(user_id)

    table = Table(title="caresync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("store", cfg.store.backend if cfg.store.backend == "memory" else f"rest {cfg.store.base_url}")
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("audit", cfg.logging.audit_file or "(logger only)")
    periodic = int(cfg.sync.periodic_interval_sec or 0)
    table.add_row("periodic_sync", f"every {periodic}s" if periodic > 0 else "off")
    table.add_row("queue_pending", str(qstats["pending"] + qstats["processing"]))
    table.add_row("queue_failed", str(qstats["failed"]))
    table.add_row("queue_conflict", str(qstats["conflict"]))
    if user_id:
        table.add_row("pending_conflicts", str(resolver.pending_count(user_id)))
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command("queue")
def queue_list(
    user_id: Optional[str] = typer.Option(None, "--user-id"),
    status_filter: Optional[str] = typer.Option(None, "--status", help="pending, failed, conflict, ..."),
    limit: int = typer.Option(50, "--limit", min=1),
):
    """List queued mutations."""
    cfg = load_config()

    from caresync.sync.queue import SyncQueue
    from caresync.sync.store import MemoryRecordStore

    queue = SyncQueue(cfg.database.path, MemoryRecordStore(), cfg.sync)
    items = queue.list_items(user_id=user_id, status=status_filter, limit=limit)

    table = Table(title=f"sync queue ({len(items)})")
    for col in ("seq", "id", "user", "table", "op", "status", "prio", "retries", "error"):
        table.add_column(col)
    for item in items:
        table.add_row(
            str(item.seq),
            item.id[:8],
            item.user_id,
            item.table_name,
            item.operation_type,
            item.status,
            str(item.priority),
            f"{item.retry_count}/{item.max_retries}",
            item.error_message or "",
        )
    console.print(table)
    _print_json(queue.stats(user_id))


@app.command("conflicts")
def conflicts(
    user_id: str = typer.Option(..., "--user-id"),
    as_json: bool = typer.Option(False, "--json", help="Print full conflict records."),
):
    """List pending conflicts for a user."""
    cfg = load_config()
    resolver = ConflictResolver(cfg.database.path, cfg.sync)
    pending = resolver.get_pending_conflicts(user_id)
    if as_json:
        for conflict in pending:
            print(dumps_conflict(conflict))
        return

    table = Table(title=f"pending conflicts for {user_id}")
    for col in ("id", "table", "type", "severity", "fields", "created_at"):
        table.add_column(col)
    for c in pending:
        table.add_row(
            c.conflict_id[:8],
            c.table_name,
            c.conflict_type,
            c.severity,
            ",".join(c.conflicting_fields),
            c.created_at,
        )
    console.print(table)
    _print_json(resolver.get_conflict_stats(user_id))


async def _run_once(user_id: str, fingerprint: str, full: bool) -> dict:
    from caresync.runtime import build_runtime

    runtime = build_runtime(load_config())
    try:
        init = await runtime.manager.initialize_sync(user_id, fingerprint, enable_periodic_sync=False)
        out: dict[str, Any] = {
            "checked_at": _now_iso(),
            "user_id": user_id,
            "success": init.success,
            "device_id": init.device.device_id if init.device else None,
            "message": init.message,
        }
        if init.success and full:
            result = await runtime.manager.force_full_sync(user_id)
        else:
            result = init.login
        if result is not None:
            out["success"] = out["success"] and result.success
            out["sync"] = result.model_dump(mode="json")
        out["status"] = (await runtime.manager.get_status(user_id)).model_dump(mode="json")
        out["queue"] = runtime.queue.stats(user_id)
        return out
    finally:
        await runtime.manager.shutdown()


@app.command("run-once")
def run_once(
    user_id: str = typer.Option(..., "--user-id"),
    fingerprint: str = typer.Option(..., "--fingerprint", help="Stable device fingerprint."),
    full: bool = typer.Option(False, "--full", help="Discard local caches and pull from the store first."),
):
    """Open a session, run one sync and print summary JSON."""
    summary = asyncio.run(_run_once(user_id, fingerprint, full))
    _print_json(summary)
    if not summary.get("success"):
        raise typer.Exit(2)


def main():
    app()


if __name__ == "__main__":
    main()
