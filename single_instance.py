"""Single instance claim for an application identity.

The claim is an OS-scoped exclusive lock named ``<identity>Mutex``. Whoever
holds it is the primary instance. The operating system drops the lock when
the owning process dies, so a crashed primary never blocks later launches.
"""
from __future__ import annotations

import hashlib
import logging
import os
import sys
import tempfile
from pathlib import Path

import psutil

# Windows WaitForSingleObject results
_WAIT_OBJECT_0 = 0x00000000
_WAIT_ABANDONED = 0x00000080
_WAIT_TIMEOUT = 0x00000102

# Characters no lock file, socket file or mutex name may carry
_UNSAFE_NAME_CHARS = ("/", "\\", "\x00")
# NAME_MAX on common filesystems; MAX_PATH for Windows kernel object names
_MAX_OBJECT_NAME = 255


class ClaimError(RuntimeError):
    """Raised when the claim primitive fails outright (not merely held elsewhere)."""

    def __init__(self, message: str, name: str) -> None:
        super().__init__(message)
        self.name = name


def validate_identity(identity: str) -> str:
    """Return ``identity`` unchanged, or raise ValueError if it is empty."""
    if not isinstance(identity, str) or not identity:
        raise ValueError("Application identity must be a non-empty string")
    return identity


def object_name(identity: str, suffix: str) -> str:
    """OS-safe name ``<identity><suffix>`` for a lock, mutex or endpoint.

    Identities that are too long, or that contain path separators or NUL,
    are replaced by a SHA-256 prefix. Every process derives the same name
    for the same identity.
    """
    name = validate_identity(identity) + suffix
    unsafe = any(char in identity for char in _UNSAFE_NAME_CHARS)
    if unsafe or len(name.encode("utf-8", errors="surrogatepass")) > _MAX_OBJECT_NAME:
        name = identity_digest(identity) + suffix
    return name


def identity_digest(identity: str) -> str:
    return hashlib.sha256(identity.encode("utf-8", errors="surrogatepass")).hexdigest()[:32]


def claim_name(identity: str) -> str:
    return object_name(identity, "Mutex")


def _read_pid(fd: int) -> int | None:
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        content = os.read(fd, 32).decode("ascii", errors="ignore").strip()
        return int(content) if content else None
    except (ValueError, OSError):
        return None


def _describe_process(pid: int) -> str:
    try:
        return f"PID {pid} ({psutil.Process(pid).name()})"
    except psutil.Error:
        return f"PID {pid}"


class InstanceClaim:
    """Exclusive, system-wide claim on being the primary instance.

    Uses ``flock`` on a lock file on Unix-like systems and a named mutex on
    Windows. There is no public release: the claim lasts until the process
    exits or this object is garbage collected.
    """

    def __init__(
        self,
        identity: str,
        runtime_dir: str | os.PathLike[str] | None = None,
        *,
        stale_lock_check: bool = True,
    ) -> None:
        self.identity = validate_identity(identity)
        self.name = claim_name(identity)
        self.lock_path = Path(runtime_dir or tempfile.gettempdir()) / self.name
        self.stale_lock_check = stale_lock_check
        self._handle: int | None = None
        self._acquired = False

    @property
    def acquired(self) -> bool:
        return self._acquired

    def _try_lock_windows(self) -> bool:
        """Try to own the named mutex without waiting."""
        import ctypes
        from ctypes import wintypes

        kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)  # type: ignore[attr-defined]
        kernel32.CreateMutexW.argtypes = [ctypes.c_void_p, wintypes.BOOL, wintypes.LPCWSTR]
        kernel32.CreateMutexW.restype = wintypes.HANDLE
        kernel32.WaitForSingleObject.argtypes = [wintypes.HANDLE, wintypes.DWORD]
        kernel32.WaitForSingleObject.restype = wintypes.DWORD

        handle = kernel32.CreateMutexW(None, False, self.name)
        if not handle:
            error = ctypes.WinError(ctypes.get_last_error())  # type: ignore[attr-defined]
            raise ClaimError(f"Unable to create instance mutex {self.name}: {error}", self.name)

        result = kernel32.WaitForSingleObject(handle, 0)
        if result in (_WAIT_OBJECT_0, _WAIT_ABANDONED):
            if result == _WAIT_ABANDONED:
                logging.info(f"Recovered abandoned claim {self.name}")
            self._handle = handle
            return True

        kernel32.CloseHandle(handle)
        if result == _WAIT_TIMEOUT:
            return False
        error = ctypes.WinError(ctypes.get_last_error())  # type: ignore[attr-defined]
        raise ClaimError(f"Waiting on instance mutex {self.name} failed: {error}", self.name)

    def _try_lock_unix(self) -> bool:
        """Try to acquire the lock file using a non-blocking flock."""
        import fcntl

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as exc:
            raise ClaimError(f"Unable to open claim lock file {self.lock_path}: {exc}", self.name) from exc

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = _read_pid(fd)
            os.close(fd)
            if holder is not None:
                logging.debug(f"Claim {self.name} is held by {_describe_process(holder)}")
            return False
        except OSError as exc:
            os.close(fd)
            raise ClaimError(f"Unable to lock {self.lock_path}: {exc}", self.name) from exc

        # Whatever PID is still recorded belongs to a holder that no longer owns the lock
        previous = _read_pid(fd)
        if self.stale_lock_check and previous is not None and previous != os.getpid():
            if psutil.pid_exists(previous):
                logging.info(f"Took over claim {self.name} released by {_describe_process(previous)}")
            else:
                logging.info(f"Recovered abandoned claim {self.name} (PID {previous} not running)")

        try:
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, str(os.getpid()).encode())
        except OSError as exc:
            os.close(fd)
            raise ClaimError(f"Unable to record PID in {self.lock_path}: {exc}", self.name) from exc
        self._handle = fd
        return True

    def try_acquire(self) -> bool:
        """Try to become the primary instance without waiting.

        Returns:
            True if this process now holds the claim, False if another live
            process does.

        Raises:
            ClaimError: the underlying platform call failed.
        """
        if self._acquired:
            return True

        if sys.platform == "win32":
            self._acquired = self._try_lock_windows()
        else:
            self._acquired = self._try_lock_unix()
        return self._acquired

    def holder_pid(self) -> int | None:
        """PID recorded by the current holder, if any (Unix only)."""
        if sys.platform == "win32":
            return None
        try:
            fd = os.open(str(self.lock_path), os.O_RDONLY)
        except OSError:
            return None
        try:
            return _read_pid(fd)
        finally:
            os.close(fd)

    def _release(self) -> None:
        handle, self._handle = self._handle, None
        self._acquired = False
        if handle is None:
            return
        if sys.platform == "win32":
            import ctypes

            # The mutex becomes abandoned, which the next owner treats as acquired
            ctypes.windll.kernel32.CloseHandle(handle)  # type: ignore[attr-defined]
        else:
            try:
                os.close(handle)
            except OSError:
                pass

    def __del__(self) -> None:
        if getattr(self, "_handle", None) is not None:
            self._release()

    def __repr__(self) -> str:
        state = "acquired" if self._acquired else "not acquired"
        return f"InstanceClaim({self.identity!r}, {state})"
