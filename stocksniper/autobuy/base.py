"""Purchase execution inputs and outputs."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from stocksniper.vault import Credentials

# (status, note) -> None; reports intermediate attempt statuses
ProgressCallback = Callable[[str, str], Awaitable[None]]

PATH_PLAYBOOK = "playbook"
PATH_AGENT = "agent"


@dataclass
class PurchaseContext:
    attempt_id: int
    watch_item_id: int
    tenant_id: int
    retailer: str
    product_url: str
    credentials: Credentials
    quantity: int = 1
    price_ceiling: Optional[Decimal] = None
    display_name: Optional[str] = None

    def playbook_variables(self) -> dict[str, str]:
        return {
            "product_url": self.product_url,
            "quantity": str(self.quantity),
            "cvv": self.credentials.verification_code or "",
            "ceiling": str(self.price_ceiling) if self.price_ceiling is not None else "",
        }


@dataclass
class PurchaseResult:
    """
    Outcome of one execution. ``status`` is an attempt status: success,
    failed, or carted (in cart but not confirmed, needs human review).
    """

    status: str
    order_ref: Optional[str] = None
    total_price: Optional[Decimal] = None
    failure_reason: Optional[str] = None
    steps_completed: list[str] = field(default_factory=list)
    path: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "order_ref": self.order_ref,
            "total_price": str(self.total_price) if self.total_price is not None else None,
            "failure_reason": self.failure_reason,
            "steps_completed": list(self.steps_completed),
            "path": self.path,
        }
