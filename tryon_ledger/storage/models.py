"""
Data models for storage layer.

Defines ledger transactions and try-on job records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class TransactionKind(Enum):
    """Kinds of gem ledger transactions."""
    DEDUCTION = "deduction"
    REFUND = "refund"


class JobStatus(Enum):
    """Lifecycle status of a try-on job."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class GemTransaction:
    """Immutable record of one balance change.

    Append-only events that create an auditable ledger of gem movements.
    Once written, these records must never be modified. amount is negative
    for deductions and positive for refunds.
    """
    identity: str
    amount: int
    kind: TransactionKind
    job_id: str
    created_at: datetime
    id: Optional[int] = None


@dataclass
class JobRecord:
    """One user-initiated try-on or edit request.

    Created as PROCESSING once gems are reserved and updated exactly once
    to COMPLETED or FAILED.
    """
    job_id: str
    identity: str
    model_image: str
    quality: str
    gems_charged: int
    created_at: datetime
    clothing_images: List[str] = field(default_factory=list)
    edit_mode: bool = False
    edit_prompt: Optional[str] = None
    cache_key: Optional[str] = None
    status: JobStatus = JobStatus.PROCESSING
    result_url: Optional[str] = None
    prediction_id: Optional[str] = None
    error_kind: Optional[str] = None
    processing_time_ms: Optional[int] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)
