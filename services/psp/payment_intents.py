"""
Payment intent processing for the PSP.

Flow of `create_and_process()`:

1. the vault token must exist, be active and not past `allowance.expires_at`;
2. amount and currency must fit the token's allowance;
3. a `pending` intent is recorded and the payment is "processed" (a delay);
4. the token is consumed with a conditional update, and the intent becomes
   `completed`. If another intent consumed the token first, this one
   becomes `failed`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from acp_protocol.errors import ACPServiceError
from acp_protocol.headers import parse_timestamp
from acp_protocol.models import (
    CreatePaymentIntentRequest,
    PaymentIntent,
    PaymentIntentStatus,
    VaultTokenStatus,
)
from services.psp.database import PaymentIntentRow, VaultTokenRow
from services.psp.vault import isoformat

logger = logging.getLogger(__name__)

PROCESSING_DELAY_SECONDS = float(os.getenv("PSP_PROCESSING_DELAY_SECONDS", "2.0"))


def generate_intent_id() -> str:
    return f"pi_{uuid.uuid4().hex[:16]}"


def _token_error(code: str, message: str) -> ACPServiceError:
    return ACPServiceError(400, "invalid_request", code, message, "$.shared_payment_token")


def intent_from_row(row: PaymentIntentRow) -> PaymentIntent:
    return PaymentIntent(
        id=row.id,
        status=PaymentIntentStatus(row.status),
        amount=row.amount,
        currency=row.currency,
        vault_token_id=row.vault_token_id,
        created=isoformat(row.created_at),
        completed_at=isoformat(row.completed_at),
        metadata=row.metadata_ or {},
    )


def check_allowance(amount: int, currency: str, allowance: dict[str, Any]) -> None:
    """Raise if `amount`/`currency` fall outside the token's allowance."""
    if amount > allowance["max_amount"]:
        raise ACPServiceError(
            400, "invalid_request", "amount_exceeds_allowance",
            f"Amount {amount} exceeds maximum allowance of {allowance['max_amount']}",
            "$.amount",
        )
    if currency != allowance["currency"]:
        raise ACPServiceError(
            400, "invalid_request", "currency_mismatch",
            f"Currency {currency} does not match vault token currency {allowance['currency']}",
            "$.currency",
        )
    if allowance.get("reason") != "one_time":
        raise ACPServiceError(
            400, "invalid_request", "invalid_allowance", "Vault token allowance must be one_time"
        )


class PaymentIntentService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _usable_token(self, db: AsyncSession, token_id: str) -> VaultTokenRow:
        token = await db.get(VaultTokenRow, token_id)
        if token is None:
            raise _token_error("invalid_vault_token", "Vault token not found")
        if token.status == VaultTokenStatus.CONSUMED.value:
            raise _token_error("vault_token_already_used", "Vault token has already been used")
        if token.status == VaultTokenStatus.EXPIRED.value:
            raise _token_error("vault_token_expired", "Vault token has expired")

        expires_at = parse_timestamp(token.allowance["expires_at"])
        if expires_at is not None and expires_at < datetime.now(timezone.utc):
            await db.execute(
                update(VaultTokenRow)
                .where(
                    VaultTokenRow.id == token_id,
                    VaultTokenRow.status == VaultTokenStatus.ACTIVE.value,
                )
                .values(status=VaultTokenStatus.EXPIRED.value)
            )
            await db.commit()
            logger.info("Vault token %s expired at %s", token_id, expires_at.isoformat())
            raise _token_error("vault_token_expired", "Vault token has expired")
        return token

    async def create_and_process(self, request: CreatePaymentIntentRequest) -> PaymentIntent:
        """Charge a vault token once, within its allowance."""
        token_id = request.shared_payment_token
        intent_id = generate_intent_id()

        async with self.session_factory() as db:
            token = await self._usable_token(db, token_id)
            check_allowance(request.amount, request.currency, token.allowance)

            intent = PaymentIntentRow(
                id=intent_id,
                vault_token_id=token_id,
                merchant_id=request.merchant_id or token.allowance.get("merchant_id"),
                status=PaymentIntentStatus.PENDING.value,
                amount=request.amount,
                currency=request.currency,
                metadata_=request.metadata or {},
                created_at=datetime.now(timezone.utc),
            )
            db.add(intent)
            await db.commit()

        logger.info("Payment intent %s processing %d %s", intent_id, request.amount, request.currency)
        await asyncio.sleep(PROCESSING_DELAY_SECONDS)

        async with self.session_factory() as db:
            consumed = await db.execute(
                update(VaultTokenRow)
                .where(
                    VaultTokenRow.id == token_id,
                    VaultTokenRow.status == VaultTokenStatus.ACTIVE.value,
                )
                .values(status=VaultTokenStatus.CONSUMED.value)
            )
            intent = await db.get(PaymentIntentRow, intent_id)
            if consumed.rowcount != 1:
                intent.status = PaymentIntentStatus.FAILED.value
                await db.commit()
                logger.warning(
                    "Payment intent %s failed: vault token %s was consumed concurrently",
                    intent_id, token_id,
                )
                raise _token_error("vault_token_already_used", "Vault token has already been used")

            intent.status = PaymentIntentStatus.COMPLETED.value
            intent.completed_at = datetime.now(timezone.utc)
            await db.commit()

        logger.info("Payment intent %s completed, vault token %s consumed", intent_id, token_id)
        return intent_from_row(intent)

    async def get_intent(self, intent_id: str) -> PaymentIntent:
        if not intent_id.startswith("pi_"):
            raise ACPServiceError(
                400, "invalid_request", "invalid_payment_intent_id",
                "Payment intent ID must start with pi_",
            )
        async with self.session_factory() as db:
            row = await db.get(PaymentIntentRow, intent_id)
        if row is None:
            raise ACPServiceError(
                404, "invalid_request", "payment_intent_not_found", "Payment intent not found"
            )
        return intent_from_row(row)
