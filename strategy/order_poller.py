import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from ingest.bithumb_rest import GatewayAPIError, GatewayAuthError
from strategy.transports.bithumb import ORDER_STATE_CANCEL, ORDER_STATE_DONE, OrderInfo


logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVALS = (0.5, 1.0, 2.0)


@dataclass(frozen=True)
class FillResult:
    filled: bool
    filled_qty: float
    status: str
    order: Optional[OrderInfo] = None


async def wait_for_fill(gateway, order_id: str, timeout_s: float = 30.0,
                        intervals: Sequence[float] = DEFAULT_POLL_INTERVALS) -> FillResult:
    """Poll an order until it is done or cancelled, with escalating waits.

    Lookup failures are tolerated until the deadline; after it one last lookup
    decides the outcome, otherwise the result is reported as ``timeout``.
    """
    intervals = tuple(intervals) or DEFAULT_POLL_INTERVALS
    deadline = time.monotonic() + timeout_s
    attempt = 0

    while time.monotonic() < deadline:
        await asyncio.sleep(intervals[min(attempt, len(intervals) - 1)])
        attempt += 1
        order = await _lookup(gateway, order_id, attempt)
        if order is None:
            continue
        logger.debug("Poll %s attempt=%s state=%s executed=%s", order_id, attempt, order.state, order.executed_volume)
        if order.state == ORDER_STATE_DONE:
            return FillResult(True, order.executed_volume, ORDER_STATE_DONE, order)
        if order.state == ORDER_STATE_CANCEL:
            return FillResult(False, order.executed_volume, ORDER_STATE_CANCEL, order)

    logger.warning("Order %s fill polling timed out after %.1fs", order_id, timeout_s)
    order = await _lookup(gateway, order_id, attempt + 1)
    if order is not None:
        return FillResult(order.state == ORDER_STATE_DONE, order.executed_volume, order.state, order)
    return FillResult(False, 0.0, 'timeout', None)


async def _lookup(gateway, order_id: str, attempt: int) -> Optional[OrderInfo]:
    try:
        return await gateway.get_order(order_id)
    except GatewayAuthError:
        raise
    except (GatewayAPIError, asyncio.TimeoutError, OSError) as exc:
        logger.warning("Poll lookup for %s failed (attempt %s): %s", order_id, attempt, exc)
        return None
