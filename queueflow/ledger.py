"""Idempotency ledger: at-most-once application over at-least-once delivery."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

from .errors import DuplicateOperation
from .persistence import LedgerRecord, WorkflowRepository

logger = logging.getLogger(__name__)


def outcome_key(step_id: str) -> str:
    return f"{step_id}:outcome"


def terminal_key(run_id: str) -> str:
    return f"{run_id}:terminal"


def enqueued_key(item_id: str) -> str:
    return f"{item_id}:enqueued"


class LedgerResult(BaseModel):
    """Result of a conditional create.

    ``existing`` is always the stored record: the new one when ``created``,
    otherwise the one written by the earlier delivery.
    """

    created: bool
    existing: LedgerRecord


class IdempotencyLedger:
    """Conditional-create guard in front of side effects keyed by domain ids."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def create_if_absent(self, key: str, record: Dict[str, Any]) -> LedgerResult:
        created, existing = await self._repository.create_record_if_absent(key, record)
        if not created:
            logger.debug(f"Ledger key {key} already present")
        return LedgerResult(created=created, existing=existing)

    async def claim(self, key: str, record: Dict[str, Any]) -> LedgerRecord:
        """Create ``key`` or raise :class:`DuplicateOperation` with the stored record."""
        result = await self.create_if_absent(key, record)
        if not result.created:
            raise DuplicateOperation(key, result.existing)
        return result.existing

    async def get(self, key: str) -> Optional[LedgerRecord]:
        return await self._repository.get_record(key)

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None
