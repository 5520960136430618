"""Earning and participant profile models."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid


class EarningStatus(Enum):
    """Payout status of an earning."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


@dataclass
class Earning:
    """
    Payable credit created once per completed session.

    session_id is the idempotency key: the store rejects a second earning
    for the same session.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str = ""
    participant_id: str = ""
    test_id: str = ""
    amount: Decimal = Decimal("0.00")
    status: EarningStatus = EarningStatus.PENDING
    description: str = ""
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class ParticipantProfile:
    """
    Reputation and earnings aggregate for one tester.

    average_rating stays None until the participant has at least one rated
    completed session.
    """

    participant_id: str = ""
    completed_count: int = 0
    total_earnings: Decimal = Decimal("0.00")
    average_rating: Optional[float] = None
    updated_at: datetime = field(default_factory=datetime.now)
