# backend/tipu/repositories/factory.py
"""
Repository Factory for the Tipu platform.

Centralises repository creation so services never construct repositories
with ad-hoc arguments.
"""

from sqlalchemy.orm import Session

from .billing_customer_repository import BillingCustomerRepository
from .booking_repository import BookingRepository
from .processed_payment_repository import ProcessedPaymentRepository
from .user_repository import UserRepository


class RepositoryFactory:
    """Factory for repository instances bound to a session."""

    @staticmethod
    def create_booking_repository(db: Session) -> BookingRepository:
        return BookingRepository(db)

    @staticmethod
    def create_user_repository(db: Session) -> UserRepository:
        return UserRepository(db)

    @staticmethod
    def create_billing_customer_repository(db: Session) -> BillingCustomerRepository:
        return BillingCustomerRepository(db)

    @staticmethod
    def create_processed_payment_repository(db: Session) -> ProcessedPaymentRepository:
        return ProcessedPaymentRepository(db)
