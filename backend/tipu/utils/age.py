# backend/tipu/utils/age.py
"""Age calculations for guardian rules."""

from datetime import date
from typing import Optional

from ..core.constants import ADULT_AGE


def calculate_age(date_of_birth: date, today: date) -> int:
    """
    Whole years between ``date_of_birth`` and ``today``.

    A birthday counts only once its month and day have been reached, so a
    29 February birthday completes a year on 1 March in non-leap years.
    Never negative.
    """
    years = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return max(years, 0)


def is_adult(date_of_birth: Optional[date], today: date) -> bool:
    """Unknown dates of birth are treated as minors."""
    if date_of_birth is None:
        return False
    return calculate_age(date_of_birth, today) >= ADULT_AGE
