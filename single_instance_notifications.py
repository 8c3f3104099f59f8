"""Launch notifications from secondary instances to the primary.

The primary listens on the endpoint ``<identity>Pipe``: a Unix domain socket
on POSIX, a named pipe on Windows. A secondary connects once, optionally
writes a UTF-8 message and closes. The close marks the end of the message.
"""
from __future__ import annotations

import logging
import os
import socket
import stat
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable

from infrastructure.metrics import (
    HANDLER_ERRORS_TOTAL,
    MESSAGES_TOTAL,
    NOTIFICATIONS_TOTAL,
    NOTIFY_FAILURES_TOTAL,
)
from single_instance import identity_digest, object_name, validate_identity

# AF_UNIX sun_path holds 104 bytes on macOS/BSD and 108 on Linux
_MAX_SOCKET_PATH = 100
_READ_CHUNK = 4096

NewInstanceHandler = Callable[[], None]
MessageHandler = Callable[[str], None]


class ConnectError(ConnectionError):
    """The primary instance could not be reached."""

    def __init__(self, message: str, address: str) -> None:
        super().__init__(message)
        self.address = address


class ConnectTimeout(ConnectError):
    """No listener accepted the connection within the timeout."""


class ChannelBindError(OSError):
    """The notification endpoint could not be bound."""

    def __init__(self, message: str, address: str) -> None:
        super().__init__(message)
        self.address = address


def channel_name(identity: str) -> str:
    return object_name(identity, "Pipe")


def channel_address(identity: str, runtime_dir: str | os.PathLike[str] | None = None) -> str:
    """Endpoint address shared by the server and its clients.

    On POSIX the socket path must fit ``sun_path``. A long name is hashed
    first; if the directory itself is too long, the system temp dir is used.
    """
    name = channel_name(identity)
    if sys.platform == "win32":
        return rf"\\.\pipe\{name}"

    directory = os.fspath(runtime_dir or tempfile.gettempdir())
    path = os.path.join(directory, name)
    if len(os.fsencode(path)) <= _MAX_SOCKET_PATH:
        return path

    short_name = f"{identity_digest(identity)}Pipe"
    path = os.path.join(directory, short_name)
    if len(os.fsencode(path)) > _MAX_SOCKET_PATH:
        path = os.path.join(tempfile.gettempdir(), short_name)
    return path


class InstanceEvents:
    """Subscribers interested in new instance launches.

    Handlers are called on the listener thread, never on the caller's main
    or UI thread. Marshal to another thread inside the handler if needed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._new_instance: list[NewInstanceHandler] = []
        self._with_message: list[MessageHandler] = []

    def on_new_instance(self, handler: NewInstanceHandler) -> Callable[[], None]:
        """Call ``handler()`` for every launch. Returns an unsubscribe function."""
        with self._lock:
            self._new_instance.append(handler)
        return lambda: self._remove(self._new_instance, handler)

    def on_new_instance_with_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Call ``handler(text)`` for every launch carrying a message."""
        with self._lock:
            self._with_message.append(handler)
        return lambda: self._remove(self._with_message, handler)

    def _remove(self, handlers: list, handler: Callable) -> None:
        with self._lock:
            try:
                handlers.remove(handler)
            except ValueError:
                pass

    def emit(self, message: str) -> None:
        """Fire the launch signal, then the message signal when ``message`` is non-empty."""
        with self._lock:
            new_instance = list(self._new_instance)
            with_message = list(self._with_message)

        NOTIFICATIONS_TOTAL.inc()
        for handler in new_instance:
            self._call(handler)

        if message:
            MESSAGES_TOTAL.inc()
            for handler in with_message:
                self._call(handler, message)

    @staticmethod
    def _call(handler: Callable, *args: str) -> None:
        try:
            handler(*args)
        except Exception as exc:
            HANDLER_ERRORS_TOTAL.inc()
            logging.error(f"Instance notification handler {handler!r} failed: {exc}")


class NotificationServer:
    """Accepts launch notifications, one connection at a time, until stopped."""

    def __init__(
        self,
        identity: str,
        events: InstanceEvents | None = None,
        *,
        runtime_dir: str | os.PathLike[str] | None = None,
        poll_interval: float = 0.2,
        read_timeout: float = 5.0,
        bind_retries: int = 3,
        bind_retry_delay: float = 0.05,
    ) -> None:
        self.identity = validate_identity(identity)
        self.address = channel_address(identity, runtime_dir)
        self.events = events if events is not None else InstanceEvents()
        self.poll_interval = poll_interval
        self.read_timeout = read_timeout
        self.bind_retries = max(1, bind_retries)
        self.bind_retry_delay = bind_retry_delay

        self._state_lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()
        self._ready = threading.Event()
        self._bind_attempted = threading.Event()
        self._bind_error: ChannelBindError | None = None
        self._bound_inode: int | None = None
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def wait_until_ready(self, timeout: float | None = None) -> bool:
        """Block until the endpoint is bound and accepting."""
        return self._ready.wait(timeout)

    # ── lifecycle ────────────────────────────────────────────────────────

    def _begin(self) -> None:
        with self._state_lock:
            if self._running:
                raise RuntimeError(f"Already listening on {self.address}")
            self._running = True
        self._stop_event.clear()
        self._ready.clear()
        self._bind_attempted.clear()
        self._bind_error = None

    def serve_forever(self) -> None:
        """Run the accept loop on the calling thread until ``stop()``."""
        self._begin()
        try:
            self._loop()
        finally:
            self._running = False

    def start(self, timeout: float = 5.0) -> threading.Thread:
        """Run the accept loop on a background daemon thread.

        Returns once the endpoint is bound.

        Raises:
            ChannelBindError: the endpoint could not be bound.
        """
        self._begin()
        thread = threading.Thread(
            target=self._run_in_thread,
            name=f"instance-listener-{self.identity}",
            daemon=True,
        )
        self._thread = thread
        thread.start()

        if not self._bind_attempted.wait(timeout):
            self.stop()
            raise ChannelBindError(f"Timed out binding {self.address}", self.address)
        if self._bind_error is not None:
            thread.join()
            self._thread = None
            raise self._bind_error
        return thread

    def _run_in_thread(self) -> None:
        try:
            self._loop()
        except ChannelBindError:
            pass  # reported by start()
        except Exception as exc:
            logging.error(f"Instance listener on {self.address} crashed: {exc}")
        finally:
            self._running = False

    def stop(self, timeout: float = 2.0) -> None:
        """Ask the loop to exit after the current accept cycle and wait for it."""
        self._stop_event.set()
        if sys.platform == "win32" and self._ready.is_set():
            self._wake_pipe()

        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout)
        if not thread.is_alive():
            self._thread = None
        elif timeout:
            logging.warning(f"Instance listener on {self.address} did not stop within {timeout}s")

    # ── accept loop ──────────────────────────────────────────────────────

    def _loop(self) -> None:
        try:
            listener = self._bind()
        except ChannelBindError as exc:
            self._bind_error = exc
            self._bind_attempted.set()
            raise

        self._ready.set()
        self._bind_attempted.set()
        logging.info(f"Listening for new instances on {self.address}")
        try:
            while not self._stop_event.is_set():
                if sys.platform == "win32":
                    message = self._accept_pipe(listener)
                else:
                    message = self._accept_unix(listener)
                if message is None:
                    continue
                logging.debug(f"New instance notification received ({len(message)} chars)")
                self.events.emit(message)
        finally:
            self._ready.clear()
            self._close(listener)
            logging.info(f"Stopped listening on {self.address}")

    def _bind(self):
        last_error: OSError | None = None
        for attempt in range(1, self.bind_retries + 1):
            try:
                if sys.platform == "win32":
                    return self._bind_pipe()
                return self._bind_unix()
            except OSError as exc:
                last_error = exc
                logging.warning(
                    f"Binding {self.address} failed (attempt {attempt}/{self.bind_retries}): {exc}"
                )
                if attempt < self.bind_retries:
                    time.sleep(self.bind_retry_delay)
        raise ChannelBindError(
            f"Unable to bind notification endpoint {self.address}: {last_error}", self.address
        ) from last_error

    def _bind_unix(self) -> socket.socket:
        path = self.address
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        try:
            # Leftover from a primary that died without cleaning up
            if stat.S_ISSOCK(os.lstat(path).st_mode):
                os.unlink(path)
                logging.info(f"Removed stale notification endpoint {path}")
        except FileNotFoundError:
            pass

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(path)
            sock.listen()
            sock.settimeout(self.poll_interval)
            self._bound_inode = os.stat(path).st_ino
        except OSError:
            sock.close()
            raise
        return sock

    def _bind_pipe(self):
        from multiprocessing.connection import Listener

        return Listener(self.address, family="AF_PIPE")

    def _accept_unix(self, listener: socket.socket) -> str | None:
        try:
            conn, _ = listener.accept()
        except socket.timeout:
            return None
        except OSError as exc:
            # EMFILE, ECONNABORTED and friends are transient; keep listening
            logging.warning(f"Accepting on {self.address} failed: {exc}")
            self._stop_event.wait(self.poll_interval)
            return None

        with conn:
            conn.settimeout(self.read_timeout)
            chunks: list[bytes] = []
            while True:
                try:
                    chunk = conn.recv(_READ_CHUNK)
                except socket.timeout:
                    logging.warning(f"Client on {self.address} stalled, keeping the bytes received so far")
                    break
                except OSError as exc:
                    logging.warning(f"Client on {self.address} dropped: {exc}")
                    break
                if not chunk:
                    break
                chunks.append(chunk)
        return b"".join(chunks).decode("utf-8", errors="replace")

    def _accept_pipe(self, listener) -> str | None:
        try:
            conn = listener.accept()
        except OSError as exc:
            logging.warning(f"Accepting on {self.address} failed: {exc}")
            self._stop_event.wait(self.poll_interval)
            return None
        try:
            if self._stop_event.is_set():
                return None
            chunks: list[bytes] = []
            while True:
                try:
                    chunks.append(conn.recv_bytes())
                except EOFError:
                    break
                except OSError as exc:
                    logging.warning(f"Client on {self.address} dropped: {exc}")
                    break
        finally:
            conn.close()
        return b"".join(chunks).decode("utf-8", errors="replace")

    def _wake_pipe(self) -> None:
        from multiprocessing.connection import Client

        try:
            Client(self.address, family="AF_PIPE").close()
        except OSError:
            pass

    def _close(self, listener) -> None:
        try:
            listener.close()
        except OSError as exc:
            logging.debug(f"Closing {self.address} failed: {exc}")

        if sys.platform == "win32" or self._bound_inode is None:
            return
        try:
            if os.stat(self.address).st_ino == self._bound_inode:
                os.unlink(self.address)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logging.debug(f"Removing {self.address} failed: {exc}")
        self._bound_inode = None


def _connect_unix(address: str, timeout: float) -> socket.socket:
    deadline = time.monotonic() + timeout
    while True:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(max(deadline - time.monotonic(), 0.001))
        try:
            sock.connect(address)
            return sock
        except (socket.timeout, BlockingIOError) as exc:
            # BlockingIOError: the listener's accept backlog is full
            sock.close()
            if isinstance(exc, socket.timeout) or time.monotonic() >= deadline:
                NOTIFY_FAILURES_TOTAL.labels(reason="timeout").inc()
                raise ConnectTimeout(
                    f"No instance answered on {address} within {timeout * 1000:.0f} ms", address
                ) from exc
            time.sleep(0.01)
        except OSError as exc:
            sock.close()
            NOTIFY_FAILURES_TOTAL.labels(reason="unreachable").inc()
            raise ConnectError(f"No instance is listening on {address}: {exc}", address) from exc


def _notify_unix(address: str, payload: bytes | None, timeout: float, write_timeout: float) -> None:
    sock = _connect_unix(address, timeout)
    try:
        if payload is not None:
            sock.settimeout(write_timeout)
            try:
                sock.sendall(payload)
            except OSError as exc:
                NOTIFY_FAILURES_TOTAL.labels(reason="write").inc()
                raise ConnectError(f"Lost connection to {address} while writing: {exc}", address) from exc
    finally:
        sock.close()


def _notify_pipe(address: str, payload: bytes | None) -> None:
    from multiprocessing.connection import Client

    try:
        conn = Client(address, family="AF_PIPE")
    except OSError as exc:
        NOTIFY_FAILURES_TOTAL.labels(reason="unreachable").inc()
        raise ConnectError(f"No instance is listening on {address}: {exc}", address) from exc

    try:
        if payload is not None:
            conn.send_bytes(payload)
    except OSError as exc:
        NOTIFY_FAILURES_TOTAL.labels(reason="write").inc()
        raise ConnectError(f"Lost connection to {address} while writing: {exc}", address) from exc
    finally:
        conn.close()


def notify_primary(
    identity: str,
    message: str | None = None,
    timeout: float = 0.1,
    *,
    runtime_dir: str | os.PathLike[str] | None = None,
    write_timeout: float = 2.0,
) -> bool:
    """Tell the primary instance that a new instance was launched.

    A single connection attempt is made. Nothing is read back.

    Args:
        identity: Application identity shared by all instances.
        message: Optional text handed to the primary.
        timeout: Connect timeout in seconds.
        runtime_dir: Directory holding the endpoint (POSIX only).
        write_timeout: Timeout in seconds for writing the message.

    Returns:
        True once the connection was made and closed.

    Raises:
        ConnectTimeout: the listener did not accept within ``timeout``.
        ConnectError: no listener exists or the connection broke.
    """
    address = channel_address(identity, runtime_dir)
    payload = message.encode("utf-8") if message is not None else None

    if sys.platform == "win32":
        _notify_pipe(address, payload)
    else:
        _notify_unix(address, payload, timeout, write_timeout)

    logging.debug(f"Notified running instance on {address}")
    return True
