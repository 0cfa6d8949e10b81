"""
models/context.py
-----------------
Explicit run context passed from the batch (or a manual trigger)
down to every outbound call and event.
"""

import uuid
from dataclasses import dataclass, field


@dataclass(frozen=True)
class RunContext:
    """
    Correlation data for one batch or one manual trigger.

    Attributes:
        trigger: What started the run ('scheduled' or 'manual').
        correlation_id: Sent as X-Correlation-Id and stamped on events.
    """
    trigger: str = "scheduled"
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def headers(self) -> dict[str, str]:
        return {"X-Correlation-Id": self.correlation_id}
