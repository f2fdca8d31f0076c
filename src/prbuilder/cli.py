import asyncio
import logging
from pathlib import Path
import signal
from typing import List, Optional

import aiohttp
import humanize
from tabulate import tabulate
import typer

from prbuilder.config import SETTINGS, Settings
from prbuilder.errors import ConfigError
from prbuilder.logger import setup_logging
from prbuilder.model import DaemonConfig, load_config
from prbuilder.scheduler import WatchScheduler, create_watchers
from prbuilder.watcher import PassResult

logger = logging.getLogger("prbuilder")

EXIT_OK = 0
EXIT_INVALID_CONFIG = 1
EXIT_ALL_HALTED = 2

app = typer.Typer()


@app.callback()
def init():
    setup_logging(SETTINGS)


def _load(config: Optional[Path]) -> DaemonConfig:
    path = config or SETTINGS.WATCH_CONFIG
    if path is None:
        typer.echo("No watch configuration given (--config or WATCH_CONFIG)", err=True)
        raise typer.Exit(EXIT_INVALID_CONFIG)
    try:
        config = load_config(path)
        config.resolve_credentials()
    except ConfigError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(EXIT_INVALID_CONFIG)
    return config


async def daemon(config: DaemonConfig, settings: Settings = SETTINGS) -> int:
    async with aiohttp.ClientSession() as session:
        try:
            watchers = create_watchers(config, session, settings=settings)
        except ConfigError as e:
            logger.error("Unable to set up watchers: %s", e)
            return EXIT_INVALID_CONFIG
        scheduler = WatchScheduler(watchers, grace_seconds=settings.SHUTDOWN_GRACE)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, scheduler.stop)
            except NotImplementedError:
                pass

        run_task = asyncio.create_task(scheduler.run())
        stop_task = asyncio.create_task(scheduler.wait_stopped())
        await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

        await scheduler.shutdown()
        stop_task.cancel()
        await asyncio.gather(run_task, stop_task, return_exceptions=True)

        if scheduler.all_halted:
            logger.error("All watchers halted, exiting")
            return EXIT_ALL_HALTED
        logger.info("Clean shutdown")
        return EXIT_OK


@app.command()
def run(
    config: Optional[Path] = typer.Option(None, "--config", "-c"),
    dry_run: bool = typer.Option(False, "--dry-run"),
):
    """Poll all configured repositories until interrupted."""
    daemon_config = _load(config)
    settings = SETTINGS
    if dry_run:
        settings = SETTINGS.model_copy(update={"DRY_RUN": True})
    raise typer.Exit(asyncio.run(daemon(daemon_config, settings)))


@app.command()
def serve(
    config: Optional[Path] = typer.Option(None, "--config", "-c"),
    host: Optional[str] = None,
    port: Optional[int] = None,
):
    """Like run, with the status server attached."""
    from prbuilder.web import create_app

    daemon_config = _load(config)
    web_app = create_app(daemon_config, SETTINGS)
    web_app.run(
        host=host or SETTINGS.HTTP_HOST,
        port=port or SETTINGS.HTTP_PORT,
        single_process=True,
    )


@app.command()
def check_config(config: Optional[Path] = typer.Option(None, "--config", "-c")):
    daemon_config = _load(config)
    rows = [
        (
            watch.name,
            watch.repository_id,
            watch.build_config,
            humanize.naturaldelta(watch.poll_interval),
            ", ".join(watch.branch_filter) or "all",
            "yes" if watch.rebuild_on_failure else "no",
        )
        for watch in daemon_config.watches
    ]
    typer.echo(
        tabulate(
            rows,
            headers=["name", "repository", "build", "interval", "branches", "rebuild"],
        )
    )


def format_pass(result: PassResult) -> str:
    rows = []
    for decision in result.decisions:
        rows.append(
            (
                decision.pull_request_id,
                decision.commit[:12] if decision.commit else "",
                decision.action.value,
                decision.reason,
            )
        )
    header = f"{result.repository}: {result.state.value}"
    if result.error:
        header += f" ({result.error})"
    if not rows:
        return header
    return header + "\n" + tabulate(rows, headers=["PR", "commit", "action", "reason"])


@app.command()
def poll_once(
    config: Optional[Path] = typer.Option(None, "--config", "-c"),
    name: List[str] = typer.Option([], "--name", "-n"),
    trigger: bool = typer.Option(False, "--trigger"),
):
    """Run a single pass per repository. Nothing is triggered unless --trigger."""
    daemon_config = _load(config)
    settings = SETTINGS.model_copy(update={"DRY_RUN": not trigger, "STATE_DIR": None})

    async def handle():
        async with aiohttp.ClientSession() as session:
            watchers = create_watchers(daemon_config, session, settings=settings)
            try:
                for watcher in watchers:
                    if name and watcher.repository not in name:
                        continue
                    result = await watcher.run_once()
                    typer.echo(format_pass(result))
                    pending = len(result.triggers)
                    typer.echo(f"{pending} trigger decision(s)\n")
            finally:
                for watcher in watchers:
                    watcher.close()

    asyncio.run(handle())


def main():
    app()


if __name__ == "__main__":
    main()
