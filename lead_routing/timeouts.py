"""Bounded calls to external collaborators (stores, sales service, channels)."""

import asyncio
import logging
from typing import Awaitable, TypeVar

from .errors import LeadRoutingError, StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_collaborator(coro: Awaitable[T], operation: str, timeout: float) -> T:
    """
    Await a collaborator call with a deadline.

    Domain errors raised by the collaborator pass through unchanged. A
    timeout or any other failure becomes StorageUnavailable.

    Args:
        coro: Awaitable performing the call
        operation: Name used in logs and in the raised error
        timeout: Deadline in seconds

    Returns:
        Whatever the collaborator returned
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except LeadRoutingError:
        raise
    except asyncio.TimeoutError as e:
        logger.error(f"{operation} timed out after {timeout}s")
        raise StorageUnavailable(operation, f"timed out after {timeout}s") from e
    except Exception as e:
        logger.error(f"{operation} failed: {e}")
        raise StorageUnavailable(operation, str(e)) from e
