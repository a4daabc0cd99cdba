"""
Idempotency layer shared by the merchant and PSP services.

Each service keeps its own records table (declared with
`IdempotencyRecordMixin`) and wraps its POST handlers with
`IdempotencyStore.run()`:

- first sight of a key: a pending record claims it, the handler runs, and a
  2xx response is written into the record (anything else releases the claim);
- same key, same canonical body hash: the stored response is replayed and
  the handler is not executed. While the first request is still running the
  duplicate waits for its response, up to `ACP_IDEMPOTENCY_WAIT_SECONDS`;
- same key, different hash: 409 conflict.

The claim is an INSERT against the `(scope, idempotency_key)` primary key, so
concurrent duplicates are serialized by the database, across processes too.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from fastapi import Response
from sqlalchemy import Column, DateTime, Integer, String, Text, delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from acp_protocol.errors import ACPServiceError, apply_common_response_headers

logger = logging.getLogger(__name__)

IDEMPOTENCY_TTL_SECONDS = int(os.getenv("ACP_IDEMPOTENCY_TTL_SECONDS", "86400"))
IDEMPOTENCY_WAIT_SECONDS = float(os.getenv("ACP_IDEMPOTENCY_WAIT_SECONDS", "10"))


def payload_hash(payload: Any) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyRecordMixin:
    """Columns of an idempotency record; (scope, idempotency_key) is unique.

    `response_status` is NULL while the claiming request is still running.
    """

    scope = Column(String, primary_key=True)
    idempotency_key = Column(String, primary_key=True)
    request_hash = Column(String, nullable=False)
    request_id = Column(String, nullable=True)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class IdempotencyStore:
    """Persistent idempotency records for one service."""

    poll_interval = 0.05

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        row_cls: type,
        ttl_seconds: int = IDEMPOTENCY_TTL_SECONDS,
        conflict_type: str = "invalid_request",
        conflict_code: str = "request_not_idempotent",
        wait_seconds: float = IDEMPOTENCY_WAIT_SECONDS,
    ):
        self.session_factory = session_factory
        self.row_cls = row_cls
        self.ttl = timedelta(seconds=ttl_seconds)
        self.conflict_type = conflict_type
        self.conflict_code = conflict_code
        self.wait_seconds = wait_seconds

    def _where(self, scope: str, idempotency_key: str):
        return (
            self.row_cls.scope == scope,
            self.row_cls.idempotency_key == idempotency_key,
        )

    async def claim(
        self,
        scope: str,
        idempotency_key: str,
        request_hash: str,
        request_id: Optional[str],
    ):
        """Insert a pending record for the key.

        Returns None when this caller now owns the key, otherwise the record
        that already holds it. Expired records are dropped first.
        """
        while True:
            now = datetime.now(timezone.utc)
            async with self.session_factory() as db:
                await db.execute(
                    delete(self.row_cls).where(
                        *self._where(scope, idempotency_key),
                        self.row_cls.created_at < now - self.ttl,
                    )
                )
                db.add(
                    self.row_cls(
                        scope=scope,
                        idempotency_key=idempotency_key,
                        request_hash=request_hash,
                        request_id=request_id,
                        created_at=now,
                    )
                )
                try:
                    await db.commit()
                    return None
                except IntegrityError:
                    await db.rollback()
                existing = await db.get(self.row_cls, (scope, idempotency_key))
            if existing is not None:
                return existing
            # Released between our insert and the read; try again.

    async def complete(self, scope: str, idempotency_key: str, status_code: int, body: str) -> None:
        async with self.session_factory() as db:
            result = await db.execute(
                update(self.row_cls)
                .where(*self._where(scope, idempotency_key))
                .values(response_status=status_code, response_body=body)
            )
            await db.commit()
        if result.rowcount != 1:
            logger.warning("Idempotency claim for key %s on %s vanished before completion", idempotency_key, scope)

    async def release(self, scope: str, idempotency_key: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                delete(self.row_cls).where(
                    *self._where(scope, idempotency_key),
                    self.row_cls.response_status.is_(None),
                )
            )
            await db.commit()

    def _conflict(self, message: str) -> ACPServiceError:
        return ACPServiceError(
            409, self.conflict_type, self.conflict_code, message, "$.headers.Idempotency-Key"
        )

    def _replay(self, record, idempotency_key: str) -> Response:
        replay = Response(
            content=record.response_body,
            status_code=record.response_status,
            media_type="application/json",
        )
        apply_common_response_headers(replay, idempotency_key, record.request_id)
        return replay

    async def run(
        self,
        scope: str,
        idempotency_key: Optional[str],
        payload: Any,
        request_id: Optional[str],
        handler: Callable[[], Awaitable[Response]],
    ) -> Response:
        """Execute `handler` at most once per (scope, key) and body."""
        if not idempotency_key:
            return await handler()

        request_hash = payload_hash(payload)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        while True:
            existing = await self.claim(scope, idempotency_key, request_hash, request_id)
            if existing is None:
                break
            if existing.request_hash != request_hash:
                logger.warning("Idempotency conflict for key %s on %s", idempotency_key, scope)
                raise self._conflict("Idempotency key reused with different request payload")
            if existing.response_status is not None:
                logger.info("Replaying stored response for key %s on %s", idempotency_key, scope)
                return self._replay(existing, idempotency_key)
            if loop.time() >= deadline:
                logger.warning("Idempotency key %s on %s is still in flight", idempotency_key, scope)
                raise self._conflict("A request with this Idempotency-Key is still being processed")
            await asyncio.sleep(self.poll_interval)

        try:
            response = await handler()
        except BaseException:
            await self.release(scope, idempotency_key)
            raise

        if 200 <= response.status_code < 300:
            await self.complete(
                scope, idempotency_key, response.status_code, bytes(response.body).decode("utf-8")
            )
        else:
            await self.release(scope, idempotency_key)
        return response
