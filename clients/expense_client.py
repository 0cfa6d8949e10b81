"""
clients/expense_client.py
-------------------------
HTTP client for the expense service.
Creating an expense is what "charging" a subscription means to this system.
"""

from typing import Optional

import requests

from models.context import RunContext
from models.outbound import ExpenseRequest
from services.errors import ExpenseDispatchFailed
from utils.logger import get_logger

logger = get_logger(__name__)


class ExpenseClient:
    """
    Posts charges to ``<base_url>/expenses``.

    Any 2xx response counts as success. Transport errors, timeouts and
    non-2xx responses are raised as ExpenseDispatchFailed.
    """

    def __init__(self, base_url: str, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def create_expense(self, request: ExpenseRequest, ctx: RunContext) -> None:
        """
        Create one expense and wait for the acknowledgment.

        Args:
            request: The charge to create.
            ctx: Run context (correlation header).

        Raises:
            ExpenseDispatchFailed: If the service did not acknowledge the charge.
        """
        try:
            resp = self.session.post(
                f"{self.base_url}/expenses",
                json=request.to_payload(),
                headers=ctx.headers(),
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ExpenseDispatchFailed(
                f"Expense creation failed for subscription {request.subscription_id}: {e}",
                request.subscription_id,
            ) from e

        logger.info(
            f"Created expense for subscription {request.subscription_id} "
            f"({request.amount} {request.currency}) [cid={ctx.correlation_id}]"
        )

    def close(self) -> None:
        self.session.close()
