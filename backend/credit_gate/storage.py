"""
Storage call boundary shared by the ledger and token services.

Every call into MongoDB carries a bounded timeout, and driver faults
surface as StorageUnavailable instead of leaking pymongo exceptions.
"""

import asyncio
import logging
from typing import Awaitable, TypeVar

from pymongo.errors import PyMongoError

from .config import STORAGE_TIMEOUT_SECONDS
from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def bounded(
    awaitable: Awaitable[T],
    operation: str,
    mutating: bool = False,
    timeout: float = STORAGE_TIMEOUT_SECONDS,
) -> T:
    """
    Await a store call with a timeout.

    A mutating call that times out or fails mid-flight is reported with
    outcome_unknown=True: the write may or may not have been applied.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error(f"Storage timeout after {timeout}s during {operation}")
        raise StorageUnavailable(e, outcome_unknown=mutating) from e
    except PyMongoError as e:
        logger.error(f"Storage error during {operation}: {e}")
        raise StorageUnavailable(e, outcome_unknown=mutating) from e
