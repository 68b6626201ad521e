"""In-memory key-value job store with TTL semantics."""
from __future__ import annotations

import copy
import threading
import time
from typing import Any, Callable, Collection, Dict, Optional, Tuple

from config import JOB_STORE_TTL_S
from observability.logger import get_logger

from .models import Job, JobStatus, job_from_dict

LOGGER = get_logger("genjobs.jobs.store")

Record = Dict[str, Any]


class JobStore:
    """Thread-safe storage for job records keyed by job id.

    Records are plain JSON-compatible dicts. They are deep-copied on the way in
    and on the way out, so a caller holding a record never shares state with the
    store. Every read-modify-write goes through :meth:`mutate`, which holds the
    store lock for the whole cycle.
    """

    def __init__(self, *, ttl_seconds: int = JOB_STORE_TTL_S, clock: Callable[[], float] = time.time) -> None:
        self._ttl_seconds = max(1, int(ttl_seconds))
        self._clock = clock
        self._records: Dict[str, Record] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = threading.RLock()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def get(self, job_id: str) -> Optional[Record]:
        with self._lock:
            self._purge_expired_locked()
            record = self._records.get(job_id)
            return copy.deepcopy(record) if record is not None else None

    def set(self, job_id: str, record: Record, ttl_seconds: Optional[int] = None) -> None:
        ttl = self._ttl_seconds if ttl_seconds is None else max(1, int(ttl_seconds))
        with self._lock:
            self._records[job_id] = copy.deepcopy(record)
            self._expiry[job_id] = self._clock() + ttl
            self._purge_expired_locked()

    def update(self, job_id: str, partial: Record) -> Optional[Record]:
        """Merge ``partial`` into an existing record; the expiry is kept."""

        with self._lock:
            self._purge_expired_locked()
            record = self._records.get(job_id)
            if record is None:
                LOGGER.warning("job_update_missing", extra={"job_id": job_id, "fields": sorted(partial)})
                return None
            record.update(copy.deepcopy(partial))
            return copy.deepcopy(record)

    def mutate(self, job_id: str, mutator: Callable[[Record], Optional[bool]]) -> Optional[Record]:
        """Apply ``mutator`` to the current record and write the result back.

        The mutator receives a private copy. Returning ``False`` skips the write;
        the unchanged stored record is returned in that case. ``None`` is returned
        when the record does not exist.
        """

        with self._lock:
            self._purge_expired_locked()
            current = self._records.get(job_id)
            if current is None:
                return None
            working = copy.deepcopy(current)
            if mutator(working) is False:
                return copy.deepcopy(current)
            self._records[job_id] = working
            return copy.deepcopy(working)

    def transition(
        self,
        job_id: str,
        expected: Collection[JobStatus],
        apply: Callable[[Job], Optional[bool]],
    ) -> Tuple[Optional[Job], bool]:
        """Apply ``apply`` to the job only while its status is one of ``expected``.

        ``apply`` may return ``False`` to veto the write. Returns the current job
        (``None`` when missing) and whether the write happened.
        """

        applied = []

        def _mutate(record: Record) -> Optional[bool]:
            job = job_from_dict(record)
            if job.status not in expected:
                return False
            if apply(job) is False:
                return False
            record.clear()
            record.update(job.to_dict())
            applied.append(True)
            return None

        record = self.mutate(job_id, _mutate)
        if record is None:
            return None, False
        return job_from_dict(record), bool(applied)

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._records.pop(job_id, None)
            self._expiry.pop(job_id, None)

    def _purge_expired_locked(self) -> None:
        now = self._clock()
        expired = [job_id for job_id, deadline in self._expiry.items() if deadline <= now]
        for job_id in expired:
            self._records.pop(job_id, None)
            self._expiry.pop(job_id, None)
        if expired:
            LOGGER.info("job_records_expired", extra={"count": len(expired)})

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired_locked()
            return len(self._records)
