"""File-backed document store with an advisory lock around read-modify-write cycles."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from ..errors import StateCorruptedError, StateLockTimeout

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_YAML_SUFFIXES = {".yaml", ".yml"}


class ResourceStore:
    """Load and save validated documents under a single state directory.

    Every mutation should run inside :meth:`locked`. The lock is an exclusive
    ``flock`` on ``<root>/.autodev.lock`` so separate short-lived processes
    serialise their read-modify-write cycles. Nested ``locked`` blocks in the
    same process reuse the held lock.
    """

    def __init__(
        self,
        root: Path,
        *,
        lock_timeout: float = 10.0,
        initial_backoff: float = 0.05,
        max_backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._root = Path(root)
        self._lock_timeout = lock_timeout
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._sleep = sleep
        self._monotonic = monotonic
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._lock_fd: int | None = None

    @property
    def root(self) -> Path:
        return self._root

    @property
    def lock_file(self) -> Path:
        return self._root / ".autodev.lock"

    @property
    def is_locked(self) -> bool:
        return self._depth > 0

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._thread_lock:
            if self._depth == 0:
                self._acquire()
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0:
                    self._release()

    def _acquire(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_file), os.O_CREAT | os.O_RDWR, 0o644)
        deadline = self._monotonic() + self._lock_timeout
        delay = self._initial_backoff
        attempts = 0
        while True:
            attempts += 1
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                if self._monotonic() >= deadline:
                    os.close(fd)
                    raise StateLockTimeout(
                        f"Timed out after {self._lock_timeout}s waiting for {self.lock_file}"
                    )
                logger.debug(
                    "State lock busy; backing off",
                    extra={"attempt": attempts, "delay": delay},
                )
                self._sleep(delay)
                delay = min(delay * 2, self._max_backoff)
                continue
            self._lock_fd = fd
            return

    def _release(self) -> None:
        if self._lock_fd is None:
            return
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None

    def exists(self, path: Path) -> bool:
        return Path(path).is_file()

    def load(self, path: Path, model: type[ModelT]) -> ModelT | None:
        """Return the validated document at ``path`` or None when it does not exist."""

        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        try:
            if path.suffix in _YAML_SUFFIXES:
                document = yaml.safe_load(raw)
            else:
                document = json.loads(raw)
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise StateCorruptedError(f"Failed to parse {path}: {exc}") from exc

        if not isinstance(document, dict):
            raise StateCorruptedError(f"Expected a mapping at the top level of {path}")

        try:
            return model.model_validate(document)
        except ValidationError as exc:
            raise StateCorruptedError(f"Schema validation error in {path}: {exc}") from exc

    def save(self, path: Path, document: BaseModel) -> Path:
        """Atomically replace ``path`` with the serialized document."""

        payload = document.model_dump(mode="json")
        path = Path(path)
        if path.suffix in _YAML_SUFFIXES:
            text = yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)
        else:
            text = json.dumps(payload, indent=2) + "\n"
        return self.write_text(path, text)

    def write_text(self, path: Path, text: str) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return path

    def delete(self, path: Path) -> bool:
        path = Path(path)
        if not path.exists():
            return False
        path.unlink()
        return True


__all__ = ["ResourceStore"]
