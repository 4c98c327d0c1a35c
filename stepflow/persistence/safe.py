"""Status store wrapper whose writes never interrupt a run."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .models import WorkflowStatusRecord
from .repository import WorkflowStatusStore

logger = logging.getLogger(__name__)


class SafeStatusStore:
    """Delegate to ``inner`` but log and swallow write failures.

    Reads still propagate errors; only ``set_status`` is best-effort.
    """

    def __init__(self, inner: WorkflowStatusStore) -> None:
        self.inner = inner

    async def set_status(self, run_id: str, **fields: Any) -> Optional[WorkflowStatusRecord]:
        try:
            return await self.inner.set_status(run_id, **fields)
        except Exception as e:
            logger.error(
                f"Failed to write status {fields.get('status')!r} for run_id={run_id}: {e}"
            )
            return None

    async def get_status(self, run_id: str) -> WorkflowStatusRecord | None:
        return await self.inner.get_status(run_id)

    async def get_run_id_by_execution_id(self, execution_id: str) -> str | None:
        return await self.inner.get_run_id_by_execution_id(execution_id)

    async def list_statuses(self, status: Optional[str] = None) -> list[WorkflowStatusRecord]:
        return await self.inner.list_statuses(status)
