"""
Persistence interfaces used by the enrichment engine.

Runs are append-only; records are upserted. Quota counters expose atomic
check-and-increment so a shared backend can replace the in-process one
without touching call sites.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from models.base import RecordEnrichmentStatus
from models.enrichment_run import EnrichmentRun
from models.quota import QuotaCounter, QuotaHistory
from models.record import Record


class RunStore(ABC):
    """Records and their enrichment run log."""

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_record(self, record_id: int) -> Optional[Record]:
        ...

    @abstractmethod
    async def update_record(self, record_id: int, patch: Dict[str, Any]) -> Record:
        """Apply ``patch`` to the record. Raises RecordNotFoundError."""

    @abstractmethod
    async def find_records_by_status(
        self,
        status: RecordEnrichmentStatus,
        limit: int,
        attempted_before: Optional[datetime] = None,
    ) -> List[Record]:
        """
        Never-attempted records first, then least recently attempted, then oldest.

        With ``attempted_before``, records attempted at or after that time are
        left out.
        """

    @abstractmethod
    async def count_records_by_status(self) -> Dict[str, int]:
        ...

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_run(self, run: EnrichmentRun) -> EnrichmentRun:
        """Persist a new run and return it with its id assigned."""

    @abstractmethod
    async def update_run(
        self, run_id: int, patch: Dict[str, Any], expected_version: Optional[int] = None
    ) -> Optional[EnrichmentRun]:
        """
        Apply ``patch`` to the run and bump its version.

        With ``expected_version`` the write is a compare-and-set: when the
        stored version differs nothing is written and None is returned.
        Raises PersistenceError when the run does not exist.
        """

    @abstractmethod
    async def find_run(self, run_id: int) -> Optional[EnrichmentRun]:
        ...

    @abstractmethod
    async def find_latest_run(self, record_id: int) -> Optional[EnrichmentRun]:
        ...

    @abstractmethod
    async def find_latest_pending_run(self, record_id: int) -> Optional[EnrichmentRun]:
        ...

    @abstractmethod
    async def find_runs_for(self, record_id: int) -> List[EnrichmentRun]:
        """Newest first."""


class QuotaStore(ABC):
    """Daily counters and history for quota-protected services."""

    @abstractmethod
    async def ensure_counter(
        self, service: str, limit: int, today: date, alert_threshold: float
    ) -> QuotaCounter:
        """
        Return the counter for ``service``, creating it when missing.

        A counter last reset before ``today`` is zeroed first. The stored
        limit follows ``limit`` so configuration changes apply immediately.
        """

    @abstractmethod
    async def try_consume(self, service: str, amount: int) -> bool:
        """Atomically add ``amount`` unless that would exceed the limit."""

    @abstractmethod
    async def reset(self, service: str, today: date) -> None:
        ...

    @abstractmethod
    async def set_alert_threshold(self, service: str, threshold: float) -> None:
        ...

    @abstractmethod
    async def set_last_error(self, service: str, message: Optional[str]) -> None:
        ...

    @abstractmethod
    async def add_history(
        self,
        service: str,
        day: date,
        used: int = 0,
        success_count: int = 0,
        error_count: int = 0,
    ) -> None:
        """Increment the (service, day) history row, creating it when missing."""

    @abstractmethod
    async def history(self, service: str, since: date) -> List[QuotaHistory]:
        """Rows with ``date >= since``, oldest first."""
