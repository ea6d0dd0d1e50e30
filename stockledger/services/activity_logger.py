# stockledger/services/activity_logger.py
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockledger.core.enums import AuditAction
from stockledger.database import utcnow
from stockledger.models.activity_log import ActivityLog

logger = logging.getLogger(__name__)


class ActivityLogger:
    """
    Audit sink for stock and order activity.

    Success entries are written into the caller's session so they commit or
    roll back together with the mutation. Failure entries are written in their
    own short transaction because the mutation's transaction has already been
    rolled back by the time they are recorded.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def build_entry(
        action: str,
        resource: str,
        resource_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        ip_address: str = "system",
        success: bool = True,
        error_code: Optional[str] = None,
    ) -> ActivityLog:
        now = utcnow()
        return ActivityLog(
            user_id=user_id,
            action=action.value if isinstance(action, AuditAction) else action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            details={**(details or {}), "timestamp": now.isoformat()},
            ip_address=ip_address,
            success=success,
            error_code=error_code,
            created_at=now,
        )

    async def log_in_session(self, session: AsyncSession, **entry) -> ActivityLog:
        """Add an entry to an open transaction. Errors propagate to the caller's transaction."""
        log_entry = self.build_entry(**entry)
        session.add(log_entry)
        return log_entry

    async def log_stock_change(
        self,
        session: AsyncSession,
        product_id: int,
        old_stock: int,
        new_stock: int,
        reason: str,
        user_id: Optional[str] = None,
        ip_address: str = "system",
        order_id: Optional[int] = None,
    ) -> ActivityLog:
        return await self.log_in_session(
            session,
            action=AuditAction.STOCK_UPDATE,
            resource="PRODUCT",
            resource_id=product_id,
            details={
                "reason": reason,
                "oldValue": old_stock,
                "newValue": new_stock,
                "change": new_stock - old_stock,
                "orderId": order_id,
            },
            user_id=user_id,
            ip_address=ip_address,
        )

    async def log_failure(
        self,
        action: str,
        resource: str,
        resource_id: Optional[Any],
        error: Exception,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        ip_address: str = "system",
    ) -> Optional[ActivityLog]:
        """
        Record a failed attempt in its own transaction.

        Returns None if the audit write itself fails; the caller still raises
        its original error.
        """
        log_entry = self.build_entry(
            action=action,
            resource=resource,
            resource_id=resource_id,
            details={**(details or {}), "error": str(error)},
            user_id=user_id,
            ip_address=ip_address,
            success=False,
            error_code=getattr(error, "error_code", type(error).__name__),
        )
        try:
            async with self.session_factory() as session:
                session.add(log_entry)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error writing failure audit entry for {resource} {resource_id}: {e}")
            return None
        return log_entry

    async def log_activity(
        self,
        action: str,
        resource: str,
        resource_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        ip_address: str = "system",
    ) -> Optional[ActivityLog]:
        """Record a standalone success entry (order-level events)."""
        log_entry = self.build_entry(
            action=action,
            resource=resource,
            resource_id=resource_id,
            details=details,
            user_id=user_id,
            ip_address=ip_address,
        )
        try:
            async with self.session_factory() as session:
                session.add(log_entry)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error logging activity {log_entry.action}: {e}")
            return None

        logger.debug(f"Activity logged: {log_entry.action} {resource} {resource_id}")
        return log_entry
