"""
Transient persistence failure handling.

Engine writes run inside their own atomic block.  When the database
reports a transient ``OperationalError``, such as a lock timeout or a
dropped connection, the whole block is retried with
exponential backoff until the caller's timeout runs out, at which point
``PersistenceTimeout`` is raised.  Retrying only ever happens outside an
atomic block; inside one the error propagates so the outermost caller
rolls back and retries the unit of work as a whole.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Optional

from django.conf import settings
from django.db import OperationalError, connection, transaction

from capacity.exceptions import PersistenceTimeout

logger = logging.getLogger(__name__)


def run_with_retry(func: Callable, *args, timeout: Optional[float] = None, **kwargs):
    if timeout is None:
        timeout = settings.PERSISTENCE_TIMEOUT_SECONDS
    deadline = time.monotonic() + timeout
    delay = settings.PERSISTENCE_RETRY_BACKOFF
    attempt = 0
    while True:
        attempt += 1
        try:
            return func(*args, **kwargs)
        except OperationalError as exc:
            if connection.in_atomic_block:
                raise
            remaining = deadline - time.monotonic()
            if remaining <= delay:
                logger.error("%s gave up after %d attempts: %s", func.__name__, attempt, exc)
                raise PersistenceTimeout(
                    f"{func.__name__} did not complete within {timeout}s", attempts=attempt
                ) from exc
            logger.warning("%s transient failure (attempt %d), retrying in %.2fs: %s",
                           func.__name__, attempt, delay, exc)
            time.sleep(delay)
            delay = min(delay * 2, remaining - delay)


@contextmanager
def consistent_read():
    """Atomic block whose reads all observe one committed state.

    On PostgreSQL the transaction is switched to REPEATABLE READ so every
    query sees the same snapshot.  Other backends already give snapshot
    reads inside a transaction (SQLite serialises, InnoDB defaults to
    REPEATABLE READ).  Nested use reuses the outer transaction.
    """
    outermost = not connection.in_atomic_block
    with transaction.atomic():
        if outermost and connection.vendor == 'postgresql':
            with connection.cursor() as cursor:
                cursor.execute('SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY')
        yield
