"""
Idempotency Service — At-most-once execution keyed by (key, scope).

Only successful results are stored, so a failed operation can be retried with
the same key.
"""
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from payrecon.models.idempotency import IdempotencyKey
from payrecon.utils.hashing import generate_hash

logger = logging.getLogger(__name__)


class IdempotencyService:
    def __init__(self, session_factory, retention_days: int = 30, now: Callable[[], datetime] = datetime.utcnow):
        self._session_factory = session_factory
        self.retention_days = retention_days
        self._now = now

    def execute_with_idempotency(
        self,
        key: str,
        scope: str,
        operation: Callable[[], Any],
        request: Optional[dict] = None,
    ) -> Any:
        """Run ``operation`` once per (key, scope) and replay its stored result afterwards.

        Args:
            key: Caller-supplied idempotency key.
            scope: Operation namespace, e.g. ``payments.create``.
            operation: Zero-argument callable returning a JSON-serializable result.
            request: Request body fingerprinted into ``request_hash``.

        Returns:
            The cached response, or the fresh result of ``operation``.
        """
        request_hash = generate_hash(request or {})

        with self._session_factory() as db:
            existing = (
                db.query(IdempotencyKey)
                .filter(IdempotencyKey.key == key, IdempotencyKey.scope == scope)
                .first()
            )
            if existing is not None:
                if existing.request_hash != request_hash:
                    logger.warning("idempotency key %s (%s) reused with a different request body", key, scope)
                logger.info("idempotency hit for %s (%s)", key, scope)
                return existing.response

        result = operation()

        try:
            with self._session_factory.begin() as db:
                db.add(IdempotencyKey(
                    key=key,
                    scope=scope,
                    request_hash=request_hash,
                    response=result,
                    created_at=self._now(),
                ))
        except IntegrityError:
            # A concurrent caller stored its result first
            logger.info("idempotency key %s (%s) already stored by a concurrent request", key, scope)

        return result

    @staticmethod
    def generate_key(scope: str) -> str:
        return f"{scope}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    def cleanup_expired(self, older_than_days: Optional[int] = None) -> int:
        days = self.retention_days if older_than_days is None else older_than_days
        cutoff = self._now() - timedelta(days=days)

        with self._session_factory.begin() as db:
            deleted = (
                db.query(IdempotencyKey)
                .filter(IdempotencyKey.created_at < cutoff)
                .delete(synchronize_session=False)
            )

        logger.info("removed %d idempotency keys older than %d days", deleted, days)
        return deleted

    def get_stats(self) -> dict:
        with self._session_factory() as db:
            total = db.query(func.count(IdempotencyKey.id)).scalar() or 0
            by_scope = (
                db.query(IdempotencyKey.scope, func.count(IdempotencyKey.id))
                .group_by(IdempotencyKey.scope)
                .all()
            )
            oldest, newest = db.query(
                func.min(IdempotencyKey.created_at), func.max(IdempotencyKey.created_at)
            ).one()

        return {
            "total_keys": total,
            "keys_by_scope": {scope: count for scope, count in by_scope},
            "oldest_key": oldest.isoformat() if oldest else None,
            "newest_key": newest.isoformat() if newest else None,
        }
