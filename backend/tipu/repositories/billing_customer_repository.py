# backend/tipu/repositories/billing_customer_repository.py
"""Billing Customer Repository."""

from typing import Optional

from sqlalchemy.orm import Session

from ..models.payment import BillingCustomer
from .base_repository import BaseRepository


class BillingCustomerRepository(BaseRepository[BillingCustomer]):
    def __init__(self, db: Session):
        super().__init__(db, BillingCustomer)

    def get_by_user_id(self, user_id: str) -> Optional[BillingCustomer]:
        return self.find_one_by(user_id=user_id)
