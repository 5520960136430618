"""
Crowd Test Domain Model.

A CrowdTest is the capacity-limited task participants join. Its slot
counter (current_participants) is only ever changed through guarded
repository operations: try_reserve_slot / release_slot.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
import uuid


class CrowdTestStatus(Enum):
    """Crowd test lifecycle status."""
    DRAFT = "draft"
    PUBLISHED = "published"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses in which new participants may be admitted
JOINABLE_STATUSES: FrozenSet[CrowdTestStatus] = frozenset({
    CrowdTestStatus.PUBLISHED,
    CrowdTestStatus.RUNNING,
})

TERMINAL_TEST_STATUSES: FrozenSet[CrowdTestStatus] = frozenset({
    CrowdTestStatus.COMPLETED,
    CrowdTestStatus.CANCELLED,
})

# Statuses from which a test can still complete (manually or by filling up)
OPEN_STATUSES: FrozenSet[CrowdTestStatus] = frozenset({
    CrowdTestStatus.PUBLISHED,
    CrowdTestStatus.RUNNING,
    CrowdTestStatus.PAUSED,
})

@dataclass
class CrowdTest:
    """
    Crowd Test Entity.

    Attributes:
        id: Test identifier (UUID string)
        owner_id: Customer who owns the test
        title: Display title, used in earning descriptions and notifications
        max_participants: Immutable capacity, at least 1
        current_participants: Occupied slots, 0 <= n <= max_participants
        status: Lifecycle status
        reward_per_participant: Amount credited for each completed session
        created_at: Creation time
        published_at: When the test was first published
        completed_at: When the test reached COMPLETED
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str = ""
    title: str = ""
    max_participants: int = 1
    current_participants: int = 0
    status: CrowdTestStatus = CrowdTestStatus.DRAFT
    reward_per_participant: Decimal = Decimal("0.00")

    created_at: datetime = field(default_factory=datetime.now)
    published_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_joinable(self) -> bool:
        return self.status in JOINABLE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TEST_STATUSES

    def has_capacity(self) -> bool:
        return self.current_participants < self.max_participants

    def is_owned_by(self, actor_id: str) -> bool:
        return self.owner_id == actor_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "max_participants": self.max_participants,
            "current_participants": self.current_participants,
            "status": self.status.value,
            "reward_per_participant": str(self.reward_per_participant),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
