import asyncio
import logging

logger = logging.getLogger(__name__)


async def start_status_pruner(tracker, interval: float = 30):
    """Start the status pruner as an asyncio Task.

    The worker calls ``tracker.prune()`` every ``interval`` seconds so that
    abandoned or long-finished ingestions do not pile up, whatever the
    clients do.

    Returns an async ``stop`` callable that ends the loop and waits for it.
    """
    stop_event = asyncio.Event()

    async def _loop():
        logger.info("Status pruner started (interval=%s seconds)", interval)
        while not stop_event.is_set():
            try:
                pruned = tracker.prune()
                if pruned:
                    logger.debug(f"Pruned status entries: {pruned}")
            except Exception:
                logger.exception("Unexpected error in status pruner loop")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

        logger.info("Status pruner stopped")

    task = asyncio.create_task(_loop())

    async def stop():
        stop_event.set()
        await task

    return stop
