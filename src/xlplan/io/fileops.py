"""Workbook file handling: fingerprints, backups, atomic saves and the plan lock."""

from __future__ import annotations

import hashlib
import os
import shutil
import tempfile
import time
from datetime import datetime, timezone
from io import TextIOWrapper
from pathlib import Path

import portalocker

LOCK_SUFFIX = ".xlplan.lock"
TMP_PREFIX = ".xlplan_tmp_"
_POLL_SECONDS = 0.05


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def fingerprint(path: str | Path) -> str:
    """``sha256:<hex>`` of the file contents; reported before and after a run."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(1 << 16):
            digest.update(chunk)
    return f"sha256:{digest.hexdigest()}"


def backup(path: str | Path) -> str:
    """Copy the workbook to ``<stem>.<utc stamp>.bak<suffix>`` next to it."""
    src = Path(path)
    dest = src.with_name(f"{src.stem}.{_utc_stamp()}.bak{src.suffix}")
    shutil.copy2(src, dest)
    return str(dest)


def atomic_write(target: str | Path, data: bytes) -> None:
    """Replace *target* with *data*; readers never see a half-written workbook."""
    target = Path(target)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=TMP_PREFIX, suffix=target.suffix)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def lock_path_for(workbook_path: str | Path) -> Path:
    wb = Path(workbook_path).resolve()
    return wb.with_name(wb.name + LOCK_SUFFIX)


def lock_holder(workbook_path: str | Path) -> dict[str, str]:
    """Read the ``key=value`` lines the current (or last) lock holder wrote."""
    path = lock_path_for(workbook_path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    holder: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            holder[key.strip()] = value.strip()
    return holder


class WorkbookLock:
    """Exclusive sidecar lock held for a whole plan read-modify-write cycle.

    The lock file ``<file>.xlplan.lock`` stays on disk after release, unlocked.
    With ``timeout=0`` a held lock fails immediately with
    ``portalocker.LockException``; otherwise acquisition is retried until the
    deadline.
    """

    def __init__(self, workbook_path: str | Path, *, timeout: float = 0, command: str = "") -> None:
        self.workbook_path = Path(workbook_path).resolve()
        self.timeout = timeout
        self.command = command
        self._handle: TextIOWrapper | None = None

    @property
    def lock_path(self) -> Path:
        return lock_path_for(self.workbook_path)

    def _acquire(self, handle: TextIOWrapper) -> None:
        deadline = time.monotonic() + max(self.timeout, 0)
        while True:
            try:
                portalocker.lock(handle, portalocker.LOCK_EX | portalocker.LOCK_NB)
                return
            except portalocker.LockException:
                if time.monotonic() >= deadline:
                    raise
                time.sleep(_POLL_SECONDS)

    def _write_holder(self, handle: TextIOWrapper) -> None:
        handle.seek(0)
        handle.truncate()
        handle.write(f"pid={os.getpid()}\n")
        handle.write(f"time={datetime.now(timezone.utc).isoformat()}\n")
        if self.command:
            handle.write(f"command={self.command}\n")
        handle.flush()

    def __enter__(self) -> "WorkbookLock":
        handle = open(self.lock_path, "a+", encoding="utf-8")  # noqa: SIM115
        try:
            self._acquire(handle)
        except portalocker.LockException:
            handle.close()
            raise
        self._handle = handle
        self._write_holder(handle)
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            portalocker.unlock(handle)
        finally:
            handle.close()


def read_text_safe(path: str | Path) -> str:
    """Read a text file, tolerating a UTF-8 BOM."""
    return Path(path).read_text(encoding="utf-8-sig")
