"""
Command line front end.

Every command works on one owner's local data; ``sync`` and ``run`` talk to
the API configured by TIMECHECK_API_BASE with the token in TIMECHECK_TOKEN.
"""

import argparse
import asyncio
import logging
import sys

from .config import Settings, get_settings
from .credentials import EnvCredentialProvider
from .engine import SyncEngine
from .errors import TimeCheckError
from .logging_setup import setup_logging
from .models import normalize_owner, utcnow
from .projection import format_duration, task_seconds
from .recorder import MutationRecorder
from .remote import RemoteAuthority
from .store import LocalStore
from .trigger import SyncStatus, SyncTrigger

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="timecheck", description="Offline time tracking with sync")
    parser.add_argument("--owner", required=True, help="account e-mail the data belongs to")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add-task", help="create a task")
    add.add_argument("title")
    add.add_argument("--description")

    sub.add_parser("tasks", help="list tasks with tracked time")

    delete = sub.add_parser("delete-task", help="delete a task")
    delete.add_argument("task_id")

    start = sub.add_parser("start", help="start the timer on a task")
    start.add_argument("task_id")
    start.add_argument("--comment")

    stop = sub.add_parser("stop", help="stop the timer on a task")
    stop.add_argument("task_id")

    clear = sub.add_parser("clear", help="delete all time tracked on a task")
    clear.add_argument("task_id")

    sub.add_parser("logout", help="stop every running timer")
    sub.add_parser("status", help="show sync cursor and pending changes")
    sub.add_parser("sync", help="synchronise once")
    sub.add_parser("run", help="synchronise periodically until interrupted")
    return parser


def _print_tasks(store: LocalStore, owner: str) -> None:
    tasks = store.list_tasks(owner)
    if not tasks:
        print("No tasks yet")
        return
    entries = store.list_entries(owner)
    now = utcnow()
    for task in tasks:
        running = any(e.task_id == task.id and e.is_running for e in entries)
        marker = "*" if running else " "
        print(f"{marker} {task.id}  {format_duration(task_seconds(entries, task.id, now))}  {task.title}")


async def _sync_once(settings: Settings, store: LocalStore, owner: str) -> int:
    async with RemoteAuthority(settings.api_base, timeout=settings.http_timeout) as remote:
        engine = SyncEngine(store, remote, EnvCredentialProvider(settings.token_env))
        trigger = SyncTrigger(engine, owner, interval=settings.sync_interval)
        cursor = await trigger.attempt("manual")
    if trigger.status is SyncStatus.ERROR:
        print(f"Sync failed: {trigger.last_error}", file=sys.stderr)
        return 1
    print(f"Synced, cursor {cursor}")
    return 0


async def _run_forever(settings: Settings, store: LocalStore, owner: str) -> int:
    async with RemoteAuthority(settings.api_base, timeout=settings.http_timeout) as remote:
        engine = SyncEngine(store, remote, EnvCredentialProvider(settings.token_env))
        trigger = SyncTrigger(engine, owner, interval=settings.sync_interval)
        await trigger.attempt("startup")
        try:
            await trigger.run()
        finally:
            await trigger.stop()
    return 0


def run_command(args: argparse.Namespace, settings: Settings, store: LocalStore) -> int:
    owner = normalize_owner(args.owner)
    recorder = MutationRecorder(store, owner)

    if args.command == "add-task":
        task = recorder.create_task(args.title, args.description)
        print(task.id)
    elif args.command == "tasks":
        _print_tasks(store, owner)
    elif args.command == "delete-task":
        recorder.delete_task(args.task_id)
    elif args.command == "start":
        entry = recorder.start_timer(args.task_id, args.comment)
        print(entry.id)
    elif args.command == "stop":
        entry = recorder.stop_timer(args.task_id)
        if entry is None:
            print("No running timer")
        else:
            print(format_duration((entry.stopped_at - entry.started_at).total_seconds()))
    elif args.command == "clear":
        cleared = recorder.clear_task_time(args.task_id)
        print(f"Cleared {len(cleared)} entries")
    elif args.command == "logout":
        stopped = recorder.stop_all_running()
        print(f"Stopped {len(stopped)} timers")
    elif args.command == "status":
        print(f"Last sync: {store.get_cursor(owner) or 'never'}")
        print(f"Pending changes: {store.outbox_count(owner)}")
    elif args.command == "sync":
        return asyncio.run(_sync_once(settings, store, owner))
    elif args.command == "run":
        try:
            return asyncio.run(_run_forever(settings, store, owner))
        except KeyboardInterrupt:
            logger.info("Interrupted")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(
        log_dir=settings.data_dir,
        console_level=getattr(logging, settings.log_level, logging.INFO),
    )

    try:
        store = LocalStore.from_settings(settings)
    except TimeCheckError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    try:
        store.purge_orphans()
        return run_command(args, settings, store)
    except (TimeCheckError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        store.close()
