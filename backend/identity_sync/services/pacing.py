# backend/identity_sync/services/pacing.py
"""
Paced batch processing for outbound channel pushes.

Downstream providers rate-limit aggressively, so items are pushed in fixed
batches with a delay between items and a longer delay between batches.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List

logger = logging.getLogger(__name__)


class BatchProcessor:
    """
    Process items sequentially in batches with delays between items and batches
    """

    def __init__(
        self,
        batch_size: int = 50,
        delay_between_batches: float = 30.0,
        delay_between_items: float = 0.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        label: str = "items"
    ):
        """
        Args:
            batch_size: Number of items per batch
            delay_between_batches: Seconds to wait between batches
            delay_between_items: Seconds to wait after each item inside a batch
            sleep: Awaitable delay function (swapped out in tests)
            label: Name used in log lines
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self.delay_between_batches = delay_between_batches
        self.delay_between_items = delay_between_items
        self.label = label
        self._sleep = sleep

        self.batches_processed = 0
        self.items_processed = 0

    async def process_in_batches(
        self,
        items: list,
        process_func: Callable[[Any], Awaitable[Any]]
    ) -> List[Any]:
        """
        Process items in batches

        Args:
            items: List of items to process
            process_func: Async function to process each item

        Returns:
            List of results, None for items whose process_func raised
        """
        total_items = len(items)
        total_batches = (total_items + self.batch_size - 1) // self.batch_size
        results = []

        for i in range(0, total_items, self.batch_size):
            batch = items[i:i + self.batch_size]
            batch_num = (i // self.batch_size) + 1

            logger.info(
                f"📦 Processing {self.label} batch {batch_num}/{total_batches} "
                f"({len(batch)} items, total: {self.items_processed + len(batch)}/{total_items})"
            )

            batch_results = []
            for index, item in enumerate(batch):
                try:
                    result = await process_func(item)
                    batch_results.append(result)
                except Exception as e:
                    logger.error(f"Error processing {self.label} item: {e}")
                    batch_results.append(None)
                self.items_processed += 1

                if self.delay_between_items and index < len(batch) - 1:
                    await self._sleep(self.delay_between_items)

            results.extend(batch_results)
            self.batches_processed += 1

            # Wait before next batch (except after last batch)
            if i + self.batch_size < total_items:
                logger.info(
                    f"⏸️  Batch {batch_num} complete. "
                    f"Waiting {self.delay_between_batches}s before next batch..."
                )
                await self._sleep(self.delay_between_batches)

        if total_items:
            logger.info(
                f"✅ All {self.label} batches processed: {self.batches_processed} batches, "
                f"{self.items_processed} items"
            )

        return results
