"""Enumerations shared by models, services and schemas."""

from enum import Enum


class BookingStatus(str, Enum):
    """Lifecycle states of a booking."""

    TUTOR_SUGGESTED = "tutor_suggested"
    PENDING = "pending"
    ACCEPTED = "accepted"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"

    @classmethod
    def terminal(cls) -> frozenset["BookingStatus"]:
        return frozenset({cls.COMPLETED, cls.CANCELLED, cls.DECLINED})


class PaymentAuthType(str, Enum):
    """How a booking's payment is authorized, chosen from time-until-lesson."""

    IMMEDIATE_CHARGE = "immediate_charge"
    IMMEDIATE_AUTH = "immediate_auth"
    DEFERRED_AUTH = "deferred_auth"


class RoleName(str, Enum):
    STUDENT = "student"
    PARENT = "parent"
    TUTOR = "tutor"
    ADMIN = "admin"


class RescheduleRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class MarkerStatus(str, Enum):
    """Progress of a processed payment event after its marker is committed."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CONFLICT = "conflict"
