"""
Single-instance orchestration.

A process first tries to claim its application identity. The claim holder is
the primary and listens for later launches. Every other process is a
secondary: it forwards its message to the primary and usually exits.
"""

from __future__ import annotations

import logging
import sys
import threading
from typing import Callable

from config import Settings, get_settings
from infrastructure.metrics import CLAIM_ATTEMPTS_TOTAL
from single_instance import InstanceClaim, validate_identity
from single_instance_notifications import (
    ConnectError,
    InstanceEvents,
    MessageHandler,
    NewInstanceHandler,
    NotificationServer,
    notify_primary,
)


class InstanceManager:
    """Claim and notification channel for one application identity."""

    def __init__(self, identity: str, settings: Settings | None = None) -> None:
        self.identity = validate_identity(identity)
        self.settings = settings if settings is not None else get_settings()
        self.events = InstanceEvents()
        self._claim: InstanceClaim | None = None
        self._server: NotificationServer | None = None
        self._lock = threading.Lock()

    @property
    def claim(self) -> InstanceClaim:
        """The identity's claim, created on first use."""
        with self._lock:
            if self._claim is None:
                self._claim = InstanceClaim(
                    self.identity,
                    self.settings.INSTANCE_RUNTIME_DIR,
                    stale_lock_check=self.settings.ENABLE_STALE_LOCK_CHECK,
                )
            return self._claim

    @property
    def is_primary(self) -> bool:
        return self._claim is not None and self._claim.acquired

    @property
    def is_listening(self) -> bool:
        return self._server is not None and self._server.is_running

    # ── subscriptions ────────────────────────────────────────────────────

    def on_new_instance(self, handler: NewInstanceHandler) -> Callable[[], None]:
        return self.events.on_new_instance(handler)

    def on_new_instance_with_message(self, handler: MessageHandler) -> Callable[[], None]:
        return self.events.on_new_instance_with_message(handler)

    # ── primary / secondary decision ─────────────────────────────────────

    def _try_claim(self) -> bool:
        claimed = self.claim.try_acquire()
        CLAIM_ATTEMPTS_TOTAL.labels(result="primary" if claimed else "secondary").inc()
        return claimed

    def check_another_instance(self, exit_on_found: bool = True, message: str | None = None) -> bool:
        """Check for a living instance of this application.

        If one is found it is notified, with ``message`` when given.

        Args:
            exit_on_found: Exit the process (status 0) when another instance is found.
            message: Text forwarded to the running instance.

        Returns:
            True if another instance is running, False if this process is primary.
        """
        if self._try_claim():
            logging.info(f"{self.identity}: no other instance running, this process is primary")
            return False

        holder = self.claim.holder_pid()
        holder_txt = f" (PID {holder})" if holder is not None else ""
        logging.info(f"{self.identity}: the application is already running{holder_txt}")

        try:
            notify_primary(
                self.identity,
                message,
                self.settings.notify_connect_timeout,
                runtime_dir=self.settings.INSTANCE_RUNTIME_DIR,
                write_timeout=self.settings.NOTIFY_WRITE_TIMEOUT,
            )
        except ConnectError as exc:
            logging.warning(f"{self.identity}: could not notify the running instance: {exc}")
            if self.settings.RECLAIM_ON_NOTIFY_FAILURE and self._try_claim():
                logging.info(f"{self.identity}: previous instance is gone, this process is primary")
                return False

        if exit_on_found:
            logging.info(f"{self.identity}: exiting because another instance is active")
            sys.exit(0)
        return True

    # ── listener ─────────────────────────────────────────────────────────

    def _get_server(self) -> NotificationServer:
        with self._lock:
            if self._server is None:
                self._server = NotificationServer(
                    self.identity,
                    self.events,
                    runtime_dir=self.settings.INSTANCE_RUNTIME_DIR,
                    poll_interval=self.settings.LISTENER_POLL_INTERVAL,
                    read_timeout=self.settings.CHANNEL_READ_TIMEOUT,
                    bind_retries=self.settings.CHANNEL_BIND_RETRIES,
                    bind_retry_delay=self.settings.CHANNEL_BIND_RETRY_DELAY,
                )
            return self._server

    def wait_for_other_instances(self, run_in_background: bool = False) -> threading.Thread | None:
        """Listen for later launches until ``stop()``.

        Args:
            run_in_background: Run the loop on a daemon thread and return it,
                instead of blocking the calling thread.

        Raises:
            RuntimeError: this process does not hold the claim, or is already listening.
            ChannelBindError: the notification endpoint could not be bound.
        """
        if not self.is_primary:
            raise RuntimeError(f"{self.identity}: only the primary instance may wait for other instances")

        server = self._get_server()
        if run_in_background:
            return server.start()
        server.serve_forever()
        return None

    def stop(self, timeout: float = 2.0) -> None:
        """Stop listening, if a listener is running."""
        if self._server is not None:
            self._server.stop(timeout)

    def __repr__(self) -> str:
        role = "primary" if self.is_primary else "undecided/secondary"
        return f"InstanceManager({self.identity!r}, {role})"


def new_instance_manager(identity: str, settings: Settings | None = None) -> InstanceManager:
    """Create the manager for ``identity``. Keep one per process and pass it around."""
    return InstanceManager(identity, settings)
