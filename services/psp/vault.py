"""
Vault token issuance for the PSP.

A vault token (`vt_...`) stands in for the delegated card credentials and
carries the allowance that bounds what it can be charged for.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from acp_protocol.errors import ACPServiceError
from acp_protocol.models import DelegatePaymentRequest, DelegatePaymentResponse, VaultTokenStatus
from services.psp.database import VaultTokenRow

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "chatgpt"


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def generate_token_id() -> str:
    return f"vt_{uuid.uuid4().hex[:16]}"


class VaultTokenService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_token(
        self,
        request: DelegatePaymentRequest,
        idempotency_key: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> DelegatePaymentResponse:
        """Store the delegated credentials and return the new vault token."""
        token_id = generate_token_id()
        created = datetime.now(timezone.utc)
        billing_address = request.billing_address

        row = VaultTokenRow(
            id=token_id,
            idempotency_key=idempotency_key,
            request_id=request_id,
            status=VaultTokenStatus.ACTIVE.value,
            payment_method=request.payment_method.model_dump(mode="json", exclude_none=True),
            allowance=request.allowance.model_dump(mode="json"),
            billing_address=(
                billing_address.model_dump(mode="json", exclude_none=True) if billing_address else None
            ),
            risk_signals=[signal.model_dump(mode="json") for signal in request.risk_signals],
            metadata_=dict(request.metadata),
            created_at=created,
        )
        async with self.session_factory() as db:
            db.add(row)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                logger.warning("Vault token for idempotency key %s already exists", idempotency_key)
                raise ACPServiceError(
                    409,
                    "idempotency_conflict",
                    "idempotency_conflict",
                    "A request with this Idempotency-Key is already being processed",
                    "$.headers.Idempotency-Key",
                ) from exc

        metadata = dict(request.metadata)
        metadata["idempotency_key"] = idempotency_key
        metadata["merchant_id"] = request.allowance.merchant_id
        metadata["source"] = request.metadata.get("source") or DEFAULT_SOURCE

        logger.info(
            "Issued vault token %s for session %s (max %d %s)",
            token_id,
            request.allowance.checkout_session_id,
            request.allowance.max_amount,
            request.allowance.currency,
        )
        return DelegatePaymentResponse(id=token_id, created=isoformat(created), metadata=metadata)

    async def get_token(self, token_id: str) -> Optional[VaultTokenRow]:
        async with self.session_factory() as db:
            return await db.get(VaultTokenRow, token_id)
