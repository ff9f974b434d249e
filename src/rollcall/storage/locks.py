"""Process-level exclusion on a state directory."""

from __future__ import annotations

from pathlib import Path

from filelock import FileLock, Timeout


class LockTimeout(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""


def acquire_lock(locks_dir: Path, key: str, timeout: float = 10) -> FileLock:
    """Acquire ``locks_dir/<key>.lock`` and return the held lock.

    The caller owns the returned lock and must ``release()`` it.  Used by
    the client context, which holds its lock for its whole lifetime.

    Raises:
        LockTimeout: If the lock cannot be acquired within *timeout* seconds.
    """
    lock = FileLock(locks_dir / f"{key}.lock", timeout=timeout)
    try:
        lock.acquire()
    except Timeout:
        raise LockTimeout(f"Could not acquire lock '{key}' within {timeout}s") from None
    return lock

