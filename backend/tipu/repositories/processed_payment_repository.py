# backend/tipu/repositories/processed_payment_repository.py
"""
Processed Payment Event Repository.

Stores idempotency markers for payment-succeeded events. Markers are keyed by
the Stripe event id and are also unique per payment reference.
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import MarkerStatus
from ..core.exceptions import RepositoryException
from ..models.payment import ProcessedPaymentEvent
from .base_repository import BaseRepository


class ProcessedPaymentRepository(BaseRepository[ProcessedPaymentEvent]):
    def __init__(self, db: Session):
        super().__init__(db, ProcessedPaymentEvent)

    def _pk_column(self) -> Any:
        return ProcessedPaymentEvent.event_id

    def find_existing(
        self, event_id: str, payment_reference: str
    ) -> Optional[ProcessedPaymentEvent]:
        """Return a marker matching either the event id or the payment reference."""
        try:
            return (
                self.db.query(ProcessedPaymentEvent)
                .filter(
                    or_(
                        ProcessedPaymentEvent.event_id == event_id,
                        ProcessedPaymentEvent.payment_reference == payment_reference,
                    )
                )
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error reading payment marker {event_id}: {str(e)}")
            raise RepositoryException(f"Failed to read payment marker: {str(e)}")

    def get_unconfirmed(self, created_before: datetime, limit: int) -> List[ProcessedPaymentEvent]:
        """Markers whose confirmation never completed, oldest first."""
        try:
            return (
                self.db.query(ProcessedPaymentEvent)
                .filter(
                    ProcessedPaymentEvent.status.in_(
                        [MarkerStatus.PENDING.value, MarkerStatus.FAILED.value]
                    ),
                    ProcessedPaymentEvent.created_at <= created_before,
                )
                .order_by(ProcessedPaymentEvent.created_at.asc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading unconfirmed payment markers: {str(e)}")
            raise RepositoryException(f"Failed to load payment markers: {str(e)}")

    def delete_expired(self, now: datetime) -> int:
        try:
            return (
                self.db.query(ProcessedPaymentEvent)
                .filter(ProcessedPaymentEvent.expires_at <= now)
                .delete(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error purging payment markers: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to purge payment markers: {str(e)}")
