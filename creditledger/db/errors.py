from contextlib import contextmanager
from typing import Iterator

from pymongo.errors import DuplicateKeyError, PyMongoError

from creditledger.core.exceptions import StorageUnavailableError
from creditledger.core.logging import get_logger

log = get_logger(__name__)


@contextmanager
def storage_guard(operation: str) -> Iterator[None]:
    """Translate driver failures into StorageUnavailableError.

    DuplicateKeyError passes through untouched: callers use it as the
    idempotency signal of a unique index.
    """
    try:
        yield
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        log.error("storage_error", operation=operation, error=str(e))
        raise StorageUnavailableError(f"Credit storage unavailable during {operation}") from e
