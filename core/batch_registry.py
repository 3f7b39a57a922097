"""
In-memory registry of batches for one process.
"""

import logging
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .models import Batch

logger = logging.getLogger(__name__)


class BatchRegistry:
    """Create, look up and expire batches."""

    def __init__(self):
        self._batches: Dict[str, Batch] = {}

    def create(self, identifiers: Sequence[str], rejected: Optional[List[Tuple[str, str]]] = None) -> Batch:
        batch = Batch(
            batch_id=uuid.uuid4().hex[:12],
            identifiers=list(identifiers),
            rejected=list(rejected or []),
        )
        self._batches[batch.batch_id] = batch
        logger.info(f"[Registry] Batch {batch.batch_id} created with {batch.total} items")
        return batch

    def get(self, batch_id: str) -> Optional[Batch]:
        return self._batches.get(batch_id)

    def list(self) -> List[Batch]:
        return sorted(self._batches.values(), key=lambda b: b.created_at)

    def mark_retrieved(self, batch_id: str) -> bool:
        batch = self._batches.get(batch_id)
        if batch is None:
            return False
        batch.retrieved_at = time.time()
        return True

    def cleanup(self, retention_seconds: float, now: Optional[float] = None) -> List[Batch]:
        """
        Drop terminal batches that were downloaded or outlived the retention window.

        Results files of dropped batches are deleted as well.

        Returns:
            The removed batches
        """
        now = time.time() if now is None else now
        removed = []
        for batch_id, batch in list(self._batches.items()):
            if not batch.status.is_terminal:
                continue
            finished = batch.finished_at or batch.created_at
            if batch.retrieved_at is None and now - finished <= retention_seconds:
                continue

            del self._batches[batch_id]
            removed.append(batch)
            if batch.results_path:
                try:
                    Path(batch.results_path).unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"[Registry] Could not delete {batch.results_path}: {e}")

        if removed:
            logger.info(f"[Registry] Cleaned up {len(removed)} batch(es)")
        return removed

    def __len__(self) -> int:
        return len(self._batches)
