"""
Netforge -- Shared Public Keystore Handle

``public.pfx`` holds the public certificates of every node and is rewritten
whenever a node's PKCS#12 keys change. Concurrent writers would silently drop
each other's entries, so every mutation goes through a
``PublicCertificateStore``:

  - an ``asyncio.Lock`` per keystore path serialises writers in this process
  - an advisory ``public.pfx.lock`` file (created with ``O_EXCL``) keeps a
    second process out, acquired with bounded waiting

The lock file records the holder's PID. A lock whose holder no longer exists
is stale and is broken, so a re-run after a crash is not locked out.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import time
import weakref
from collections.abc import AsyncIterator
from pathlib import Path
from typing import ClassVar

import structlog

from netforge.errors import PublicStoreLockedError

logger = structlog.get_logger("netforge.keys.public_store")

PUBLIC_PFX = "public.pfx"


class PublicCertificateStore:
    # asyncio locks belong to one event loop; they live as long as that loop
    _locks: ClassVar[
        weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[Path, asyncio.Lock]]
    ] = weakref.WeakKeyDictionary()

    def __init__(
        self,
        keys_dir: str | Path,
        *,
        lock_timeout_s: float = 30.0,
        poll_interval_s: float = 0.1,
    ) -> None:
        self.path = Path(keys_dir) / PUBLIC_PFX
        self.lock_path = self.path.with_name(PUBLIC_PFX + ".lock")
        self._lock_timeout_s = lock_timeout_s
        self._poll_interval_s = poll_interval_s
        self._logger = logger.bind(system="keys.public_store", path=str(self.path))

    @property
    def _lock(self) -> asyncio.Lock:
        locks = self._locks.setdefault(asyncio.get_running_loop(), {})
        key = self.path.resolve()
        lock = locks.get(key)
        if lock is None:
            lock = locks[key] = asyncio.Lock()
        return lock

    def exists(self) -> bool:
        return self.path.exists()

    @contextlib.asynccontextmanager
    async def locked(self) -> AsyncIterator[Path]:
        """Hold the single-writer token for the duration of the block."""
        async with self._lock:
            await self._acquire_file_lock()
            try:
                yield self.path
            finally:
                self._release_file_lock()

    async def _acquire_file_lock(self) -> None:
        deadline = time.monotonic() + self._lock_timeout_s
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._break_stale_lock():
                    continue
                if time.monotonic() >= deadline:
                    self._logger.error("public_store_lock_timeout", holder=self._holder_pid())
                    raise PublicStoreLockedError(
                        f"Could not acquire {self.lock_path} within {self._lock_timeout_s}s",
                        lock_file=self.lock_path,
                        holder=self._holder_pid(),
                    ) from None
                await asyncio.sleep(self._poll_interval_s)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self._logger.debug("public_store_locked")
            return

    def _release_file_lock(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.lock_path.unlink()
        self._logger.debug("public_store_released")

    def _holder_pid(self) -> int | None:
        try:
            return int(self.lock_path.read_text().strip())
        except (OSError, ValueError):
            return None

    def _break_stale_lock(self) -> bool:
        """Remove the lock file if the process that wrote it is gone."""
        pid = self._holder_pid()
        if pid is None or pid == os.getpid():
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Alive, owned by another user
            return False
        else:
            return False

        self._logger.warning("public_store_stale_lock_removed", holder=pid)
        with contextlib.suppress(FileNotFoundError):
            self.lock_path.unlink()
        return True
