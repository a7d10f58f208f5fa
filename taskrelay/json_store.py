"""JSON document storage with locked read-modify-write and atomic writes.

Each store owns exactly one JSON file. Every public operation of a store runs
inside ``transaction()`` (mutations) or ``snapshot()`` (reads), so callers never
hold the raw document outside the lock.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator

from .config import DEFAULT_LOCK_TIMEOUT_SECONDS
from .errors import StoreReadError, StoreWriteError
from .lock_utils import locked


class JsonFileStore:
    """One JSON document on disk guarded by a sibling lock file.

    Args:
        path: Path to the JSON file
        default_factory: Builds the empty document used when the file does not exist
        lock_timeout: Seconds to wait for the lock before StoreLockTimeout
    """

    def __init__(
        self,
        path: Path | str,
        default_factory: Callable[[], Any],
        lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ):
        self.path = Path(path)
        self.lock_path = self.path.with_name(f".{self.path.name}.lock")
        self.default_factory = default_factory
        self.lock_timeout = lock_timeout

    def read(self) -> Any:
        """Read the document without locking.

        Returns:
            Parsed JSON, or a fresh default document if the file doesn't exist

        Raises:
            StoreReadError: if the file can't be read or isn't valid JSON
        """
        if not self.path.exists():
            return self.default_factory()

        try:
            with open(self.path) as f:
                return json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StoreReadError(str(self.path), f"invalid JSON ({e})") from e
        except OSError as e:
            raise StoreReadError(str(self.path), str(e)) from e

    def write(self, data: Any) -> None:
        """Save the document atomically using temp file + rename.

        Raises:
            StoreWriteError: if the file can't be written
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Temp file in same directory keeps the rename on one filesystem
            fd, temp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.stem}_", suffix=".json"
            )
        except OSError as e:
            raise StoreWriteError(str(self.path), str(e)) from e

        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(temp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise StoreWriteError(str(self.path), str(e)) from e

    @contextmanager
    def transaction(self) -> Generator[Any, None, None]:
        """Lock, load, yield the document for mutation, then save it.

        The document is only written back if the block exits normally.
        """
        with locked(self.lock_path, timeout=self.lock_timeout):
            data = self.read()
            yield data
            self.write(data)

    def snapshot(self) -> Any:
        """Read the document under the lock."""
        with locked(self.lock_path, timeout=self.lock_timeout):
            return self.read()

    def exists(self) -> bool:
        return self.path.exists()

    def delete(self) -> None:
        """Remove the backing file (no-op if it doesn't exist)."""
        with locked(self.lock_path, timeout=self.lock_timeout):
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StoreWriteError(str(self.path), str(e)) from e
