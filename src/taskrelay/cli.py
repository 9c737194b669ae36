from __future__ import annotations

import json
import logging
import os
import signal
import threading

import click

from taskrelay import __version__
from taskrelay.config import DEFAULTS, Settings, mask_value
from taskrelay.db import connect, delete_setting, set_setting
from taskrelay.errors import RetryRejected
from taskrelay.tracker import ProjectTracker

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _echo(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def _log_level_option(fn):  # type: ignore[no-untyped-def]
    return click.option(
        "--log-level",
        default=lambda: os.environ.get("TASKRELAY_LOG_LEVEL", "INFO"),
        show_default="INFO",
        help="Logging level (env TASKRELAY_LOG_LEVEL).",
    )(fn)


def _settings() -> Settings:
    from taskrelay.runtime import get_settings

    return get_settings()


def _tracker(settings: Settings, *, required: bool = True) -> ProjectTracker | None:
    from taskrelay.runtime import get_tracker

    try:
        return get_tracker(settings)
    except ValueError as e:
        if required:
            raise click.ClickException(str(e)) from e
        return None


def _validate_key(key: str) -> str:
    if key not in DEFAULTS:
        raise click.ClickException(
            f"Unknown setting '{key}'. Valid: {', '.join(sorted(DEFAULTS))}"
        )
    return key


class _JsonErrorGroup(click.Group):
    """Group that reports Click errors as a JSON object on stdout."""

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


@click.group(cls=_JsonErrorGroup)
@click.version_option(version=__version__)
def main():
    """Relay tracker work items to an AI execution agent.

    \b
    Quick start:
      taskrelay settings set linear_api_key KEY   Configure the tracker
      taskrelay serve                             Pollers + worker pool
      taskrelay status                            Dashboard snapshot
      taskrelay watch                             Follow live events
      taskrelay retry TASK_ID                     Re-run a failed item
    """


# -- processes --


@main.command()
@_log_level_option
def serve(log_level: str) -> None:
    """Run both pollers and a pool of `concurrency` rq workers until stopped."""
    from taskrelay.pollers import DiscoveryPoller, ReviewPoller, Ticker
    from taskrelay.queue import spawn_workers
    from taskrelay.runtime import get_store

    _configure_logging(log_level)
    settings = _settings()
    tracker = _tracker(settings)
    assert tracker is not None
    store = get_store(settings)

    workers = spawn_workers(settings.concurrency)
    tickers = [
        Ticker(DiscoveryPoller(tracker, settings)),
        Ticker(ReviewPoller(tracker, settings, store)),
    ]
    for ticker in tickers:
        ticker.start()

    stop_event = threading.Event()

    def on_signal(signum, _frame) -> None:
        log.info("Signal %d received, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, on_signal)
    signal.signal(signal.SIGINT, on_signal)
    log.info("taskrelay serving with %d worker(s)", len(workers))
    stop_event.wait()

    for ticker in tickers:
        ticker.stop()
    for proc in workers:
        proc.terminate()
    for proc in workers:
        proc.wait(timeout=30)
    log.info("taskrelay stopped")


@main.command()
@click.option("--burst", is_flag=True, help="Exit when the queue is empty.")
@_log_level_option
def worker(burst: bool, log_level: str) -> None:
    """Run one rq worker (with scheduler) in the foreground."""
    from rq import Worker

    from taskrelay.queue import get_queue, get_redis

    _configure_logging(log_level)
    w = Worker([get_queue()], connection=get_redis())
    w.work(with_scheduler=True, burst=burst)


@main.group()
def poll() -> None:
    """Run a single poller pass."""


@poll.command("discover")
@_log_level_option
def poll_discover(log_level: str) -> None:
    """Claim ready items and enqueue execute jobs once."""
    from taskrelay.pollers import DiscoveryPoller

    _configure_logging(log_level)
    settings = _settings()
    tracker = _tracker(settings)
    assert tracker is not None
    enqueued = DiscoveryPoller(tracker, settings).run_once()
    _echo({"ok": enqueued is not None, "enqueued": enqueued or 0})


@poll.command("review")
@_log_level_option
def poll_review(log_level: str) -> None:
    """Turn new review comments into feedback jobs once."""
    from taskrelay.pollers import ReviewPoller
    from taskrelay.runtime import get_store

    _configure_logging(log_level)
    settings = _settings()
    tracker = _tracker(settings)
    assert tracker is not None
    enqueued = ReviewPoller(tracker, settings, get_store(settings)).run_once()
    _echo({"ok": enqueued is not None, "enqueued": enqueued or 0})


# -- dashboard --


def _monitor():
    from taskrelay.runtime import get_monitor

    settings = _settings()
    return get_monitor(settings, tracker=_tracker(settings, required=False))


@main.command()
def status() -> None:
    """Show queue depth, tracker counts and running tasks."""
    _echo(_monitor().dashboard_snapshot())


@main.command()
@click.argument("task_id")
def task(task_id: str) -> None:
    """Show one task: running, recently completed or stored."""
    detail = _monitor().task_detail(task_id)
    if detail is None:
        raise click.ClickException(f"Task '{task_id}' not found")
    _echo(detail)


@main.command()
@click.option("--failed", "show_failed", is_flag=True, help="List terminally failed jobs.")
@click.option("--flush-failed", is_flag=True, help="Clear the failed job registry.")
def queue(show_failed: bool, flush_failed: bool) -> None:
    """List waiting jobs (queued or scheduled for a backoff retry)."""
    from taskrelay.queue import flush_failed_jobs, get_failed_jobs

    if flush_failed:
        _echo({"ok": True, "removed": flush_failed_jobs()})
        return
    if show_failed:
        _echo(get_failed_jobs())
        return
    _echo(_monitor().list_queued())


@main.command()
@click.option("--limit", default=50, show_default=True, help="Rows to show.")
def sessions(limit: int) -> None:
    """List stored task sessions, most recent first."""
    from taskrelay.runtime import get_store

    _echo(get_store(_settings()).recent(limit))


@main.command()
@click.option("--task-id", default=None, help="Only events for this task.")
@click.option("--type", "types", multiple=True, help="Only these event types.")
@click.option("--from-start", is_flag=True, help="Replay retained events first.")
def watch(task_id: str | None, types: tuple[str, ...], from_start: bool) -> None:
    """Print dashboard events as JSON lines until interrupted."""
    from taskrelay.queue import EventSubscriber

    subscriber = EventSubscriber(
        task_id=task_id, types=set(types) or None, timeout=5.0, cursor="0" if from_start else "$"
    )
    try:
        for event in subscriber:
            if event is not None:
                click.echo(json.dumps(event, default=str))
    except KeyboardInterrupt:
        pass


# -- commands --


@main.command()
def pause() -> None:
    """Stop workers from starting new jobs. Running jobs finish."""
    _monitor().pause()
    _echo({"ok": True, "paused": True})


@main.command()
def resume() -> None:
    """Let workers dequeue jobs again."""
    _monitor().resume()
    _echo({"ok": True, "paused": False})


@main.command()
@click.argument("task_id")
def retry(task_id: str) -> None:
    """Re-run a failed item, resuming its stored agent session."""
    from taskrelay.runtime import get_monitor

    settings = _settings()
    monitor = get_monitor(settings, tracker=_tracker(settings))
    try:
        job_id = monitor.retry(task_id)
    except RetryRejected as e:
        raise click.ClickException(str(e)) from e
    _echo({"ok": True, "task_id": task_id, "job_id": job_id})


# -- settings --


@main.group("settings")
def settings_group() -> None:
    """Read and write runtime settings (stored in the SQLite settings table)."""


@settings_group.command("list")
def settings_list() -> None:
    """Show every setting with its resolved value and source."""
    s = _settings()
    rows = {}
    for key in sorted(DEFAULTS):
        value, source = s.resolve_with_source(key)
        rows[key] = {"value": mask_value(key, value), "source": source}
    _echo(rows)


@settings_group.command("get")
@click.argument("key")
def settings_get(key: str) -> None:
    value, source = _settings().resolve_with_source(_validate_key(key))
    _echo({"key": key, "value": mask_value(key, value), "source": source})


@settings_group.command("set")
@click.argument("key")
@click.argument("value")
def settings_set(key: str, value: str) -> None:
    _validate_key(key)
    with connect(_settings().db_path) as conn:
        set_setting(conn, key, value)
    _echo({"ok": True, "key": key, "value": mask_value(key, value)})


@settings_group.command("unset")
@click.argument("key")
def settings_unset(key: str) -> None:
    """Remove a stored override; the environment or default applies again."""
    _validate_key(key)
    with connect(_settings().db_path) as conn:
        removed = delete_setting(conn, key)
    _echo({"ok": True, "key": key, "removed": removed})
