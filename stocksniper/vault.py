"""Read-only access to decrypted retailer credentials."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stocksniper.db.models import RetailerCredential

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    """
    Decrypted storefront login.

    ``verification_code`` is the card verification code (CVV) entered at
    checkout when the storefront asks for it. Secret fields are excluded from
    ``repr`` so the object is safe to log.
    """

    username: str = field(repr=False)
    password: str = field(repr=False)
    verification_code: Optional[str] = field(default=None, repr=False)
    retailer: str = ""

    def __repr__(self) -> str:
        return f"Credentials(retailer={self.retailer!r}, username=***, password=***)"

    __str__ = __repr__


async def has_credentials(db: AsyncSession, tenant_id: int, retailer: str) -> bool:
    result = await db.execute(
        select(RetailerCredential.id).where(
            RetailerCredential.tenant_id == tenant_id,
            RetailerCredential.retailer == retailer,
        )
    )
    return result.first() is not None


async def get_credentials(db: AsyncSession, tenant_id: int, retailer: str) -> Optional[Credentials]:
    """
    Load and decrypt credentials for (tenant, retailer).

    Returns None when missing or when decryption failed (the column type
    yields None for values it cannot decrypt).
    """
    result = await db.execute(
        select(RetailerCredential).where(
            RetailerCredential.tenant_id == tenant_id,
            RetailerCredential.retailer == retailer,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    if not row.username or not row.password:
        logger.error(f"Credentials for tenant {tenant_id} / {retailer} could not be decrypted")
        return None

    return Credentials(
        username=row.username,
        password=row.password,
        verification_code=row.verification_code or None,
        retailer=retailer,
    )
