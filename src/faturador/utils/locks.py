from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout

from faturador import config as _config
from faturador.services.exceptions import InvoiceBusyError

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def _lock_path(invoice_id: str, lock_dir: Path | None) -> Path:
    directory = lock_dir or _config.get_lock_dir()
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"nf_{_UNSAFE.sub('_', invoice_id)}.lock"


@contextmanager
def invoice_guard(invoice_id: str, lock_dir: Path | None = None) -> Iterator[None]:
    """Hold an exclusive, non-blocking lock on one invoice id.

    Raises InvoiceBusyError at once if another action (in this or another
    process) holds the lock. Different invoice ids never contend.
    """
    lock = FileLock(_lock_path(invoice_id, lock_dir), timeout=0)
    try:
        lock.acquire()
    except Timeout:
        raise InvoiceBusyError(
            f"Nota fiscal {invoice_id} já possui uma operação em andamento"
        ) from None
    try:
        yield
    finally:
        lock.release()
