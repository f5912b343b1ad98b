# backend/tipu/models/__init__.py
"""SQLAlchemy models. Importing this package registers every table on ``Base.metadata``."""

from .booking import Booking
from .payment import BillingCustomer, ProcessedPaymentEvent
from .user import User

__all__ = ["Booking", "BillingCustomer", "ProcessedPaymentEvent", "User"]
