"""Domain events emitted by the session validator."""

import time
from dataclasses import dataclass, field

SESSION_STARTED = "session_started"
SESSION_COMPLETED = "session_completed"
VIOLATION = "violation"
SUSPICION_RESET = "suspicion_reset"
DAILY_CLAIM = "daily_claim"
UPGRADE = "upgrade"


@dataclass
class MiningEvent:
    type: str
    user_id: str
    payload: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "userId": self.user_id,
            "payload": self.payload,
            "createdAt": self.created_at,
        }
