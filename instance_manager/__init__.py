"""
Single-instance coordination for desktop and command-line applications.

The first process to claim an application identity becomes the primary and
listens for later launches. Every later process forwards its message to the
primary and exits.
"""

import logging
import os
import signal
import sys
import threading

from .manager import InstanceManager, new_instance_manager

__all__ = ["InstanceManager", "new_instance_manager", "main"]


def _configure_logging(settings) -> None:
    log_dir = os.path.dirname(settings.LOG_FILE) or settings.LOG_DIR
    os.makedirs(log_dir, exist_ok=True)

    logging.basicConfig(
        filename=settings.LOG_FILE,
        filemode='w' if settings.LOG_TRUNCATE_ON_START else 'a',
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(process)d] %(message)s",
        encoding="utf-8",
    )


def _install_signal_handlers(manager: InstanceManager, stop_requested: threading.Event, console) -> None:
    def handler(sig: int, frame) -> None:
        console.print("\n[bold red]Stopping...[/bold red]")
        stop_requested.set()
        manager.stop(timeout=0)

    signal.signal(signal.SIGINT, handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, handler)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point: become the primary instance or notify the running one."""
    import argparse

    from rich.console import Console
    from rich.markup import escape

    parser = argparse.ArgumentParser(
        description="Run a single instance per application identity and forward messages to it",
        prog="instance-manager",
    )
    parser.add_argument(
        "--id",
        "-i",
        dest="identity",
        type=str,
        help="Application identity shared by all instances (default: INSTANCE_ID)",
    )
    parser.add_argument(
        "--no-exit",
        action="store_true",
        help="Return normally instead of exiting when another instance is running",
    )
    parser.add_argument(
        "--background",
        action="store_true",
        help="Listen for other instances on a background thread",
    )
    parser.add_argument("message", nargs="*", help="Message forwarded to the running instance")
    args = parser.parse_args(argv)

    # Set env vars BEFORE settings are (re)loaded so overrides take effect
    if args.identity:
        os.environ["INSTANCE_ID"] = args.identity

    from config import reload_settings
    from infrastructure.metrics import start_metrics_server

    settings = reload_settings()
    if not settings.INSTANCE_ID:
        parser.error("an application identity is required (--id or INSTANCE_ID)")

    _configure_logging(settings)
    console = Console()
    message = " ".join(args.message) or None

    if not settings.ENABLE_SINGLE_INSTANCE:
        console.print("[yellow]Single-instance enforcement is disabled (ENABLE_SINGLE_INSTANCE=false)[/yellow]")
        return 0

    manager = new_instance_manager(settings.INSTANCE_ID, settings)
    if manager.check_another_instance(exit_on_found=not args.no_exit, message=message):
        console.print(f"[yellow]{escape(manager.identity)} is already running.[/yellow]")
        return 0

    def _on_new_instance() -> None:
        console.print("[bold green]New instance launched[/bold green]")

    def _on_message(text: str) -> None:
        console.print(f"[cyan]Message:[/cyan] {escape(text)}")

    manager.on_new_instance(_on_new_instance)
    manager.on_new_instance_with_message(_on_message)

    metrics_server = None
    if settings.ENABLE_METRICS:
        metrics_server = start_metrics_server(settings.METRICS_ADDR, settings.METRICS_PORT)

    stop_requested = threading.Event()
    _install_signal_handlers(manager, stop_requested, console)

    console.print(
        f"\n[bold green]>>> Primary instance of {escape(manager.identity)} (PID {os.getpid()}) <<<[/bold green]"
    )
    if message:
        console.print(f"[cyan]Started with:[/cyan] {escape(message)}")
    console.print("[dim]Waiting for other instances. Press Ctrl+C to stop.[/dim]\n")
    sys.stdout.flush()

    try:
        if args.background:
            manager.wait_for_other_instances(run_in_background=True)
            while not stop_requested.wait(0.5):
                if not manager.is_listening:
                    logging.error(f"Listener for {manager.identity} exited unexpectedly")
                    console.print("[bold red]Listener stopped unexpectedly[/bold red]")
                    break
            manager.stop()
        else:
            manager.wait_for_other_instances(run_in_background=False)
    finally:
        if metrics_server is not None:
            metrics_server.stop()
        console.print("[dim]Stopped listening for other instances[/dim]")
    return 0
