"""Queue job bodies, a tagged union keyed by ``kind``."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


class JobDecodeError(Exception):
    """Queue body is not a known, well-formed job."""

    def __init__(self, raw: str, reason: str):
        self.raw = raw
        self.reason = reason
        super().__init__(f"Undecodable job: {reason}")


class AutoPurchaseJob(BaseModel):
    """Execute the purchase flow for one attempt. Carries no credentials."""

    kind: Literal["auto_purchase"] = "auto_purchase"
    attempt_id: int
    watch_item_id: int
    tenant_id: int
    retailer: str
    product_url: str
    quantity: int = 1
    price_ceiling: Optional[Decimal] = None
    display_name: Optional[str] = None
    purchase_lock_token: Optional[str] = None
    delivery_attempt: int = 0
    enqueued_at: datetime = Field(default_factory=datetime.utcnow)


class StockCheckJob(BaseModel):
    """Resolve a single watch item outside the periodic cycle."""

    kind: Literal["stock_check"] = "stock_check"
    watch_item_id: int
    tenant_id: int
    delivery_attempt: int = 0
    enqueued_at: datetime = Field(default_factory=datetime.utcnow)


Job = Annotated[Union[AutoPurchaseJob, StockCheckJob], Field(discriminator="kind")]

_job_adapter: TypeAdapter = TypeAdapter(Job)


def encode_job(job: AutoPurchaseJob | StockCheckJob) -> str:
    return job.model_dump_json()


def decode_job(raw: str | bytes) -> AutoPurchaseJob | StockCheckJob:
    """
    Decode a queue body into its concrete job type.

    Raises:
        JobDecodeError: unknown ``kind`` or invalid fields
    """
    text = raw.decode() if isinstance(raw, bytes) else raw
    try:
        return _job_adapter.validate_json(text)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        reason = f"{first.get('type', 'invalid')} at {'.'.join(str(p) for p in first.get('loc', ()))}"
        raise JobDecodeError(text, reason) from e
