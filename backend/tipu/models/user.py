# backend/tipu/models/user.py
"""
User model for the Tipu platform.

Users are owned by the identity service; this backend reads them to resolve
roles, guardian links and dates of birth for booking and payment rules.
"""

import logging
from typing import Any

from sqlalchemy import CheckConstraint, Column, Date, ForeignKey, String
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import RoleName
from ..database import Base
from .types import UTCDateTime, utc_now

logger = logging.getLogger(__name__)


class User(Base):
    """
    Student, parent, tutor or admin account.

    Attributes:
        role: One of ``RoleName``
        date_of_birth: Used to decide whether a student is an adult
        parent_id: Guardian of a minor student (inverse: ``children``)
    """

    __tablename__ = "users"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, index=True)
    date_of_birth = Column(Date, nullable=True)
    parent_id = Column(String(26), ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)

    parent = relationship("User", remote_side=[id], back_populates="children")
    children = relationship("User", back_populates="parent")

    __table_args__ = (
        CheckConstraint(
            "role IN ('student', 'parent', 'tutor', 'admin')",
            name="ck_users_role",
        ),
    )

    def __repr__(self) -> str:
        return f"<User {self.id}: role={self.role}>"

    @property
    def is_admin(self) -> bool:
        return self.role == RoleName.ADMIN.value

    @property
    def is_tutor(self) -> bool:
        return self.role == RoleName.TUTOR.value

    @property
    def child_ids(self) -> set[str]:
        return {child.id for child in self.children}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
        }
