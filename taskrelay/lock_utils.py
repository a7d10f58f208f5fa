"""File locking utilities using fcntl.flock."""

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from .config import DEFAULT_LOCK_TIMEOUT_SECONDS
from .errors import StoreLockTimeout

# Interval between non-blocking attempts while waiting for a lock
POLL_INTERVAL_SECONDS = 0.05


def acquire_lock(path: Path | str, timeout: float | None = DEFAULT_LOCK_TIMEOUT_SECONDS) -> int:
    """Acquire an exclusive lock on a file, waiting up to ``timeout`` seconds.

    Every call opens its own descriptor, so two callers in the same process
    exclude each other just like two processes do.

    Args:
        path: Path to the lock file
        timeout: Seconds to wait; None waits forever

    Returns:
        File descriptor holding the lock

    Raises:
        StoreLockTimeout: if the lock is still held by someone else after ``timeout``
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    deadline = None if timeout is None else time.monotonic() + timeout

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return fd
        except BlockingIOError:
            if deadline is not None and time.monotonic() >= deadline:
                os.close(fd)
                raise StoreLockTimeout(str(path), timeout)
            time.sleep(POLL_INTERVAL_SECONDS)
        except OSError:
            os.close(fd)
            raise


def release_lock(fd: int) -> None:
    """Release a lock by closing the file descriptor."""
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError:
        pass
    finally:
        os.close(fd)


@contextmanager
def locked(
    path: Path | str, timeout: float | None = DEFAULT_LOCK_TIMEOUT_SECONDS
) -> Generator[None, None, None]:
    """Context manager holding an exclusive lock for the duration of the block.

    Example:
        with locked(store_dir / ".pipeline-state.json.lock"):
            data = read()
            mutate(data)
            write(data)
    """
    fd = acquire_lock(path, timeout=timeout)
    try:
        yield
    finally:
        release_lock(fd)
