"""Application-wide constants for the Tipu platform."""

from __future__ import annotations

BRAND_NAME = "Tipu"

# Lesson duration constraints
MIN_LESSON_DURATION = 15  # minutes
MAX_LESSON_DURATION = 300  # minutes
DEFAULT_LESSON_DURATION = 60  # minutes

# Text constraints
MIN_REASON_LENGTH = 10
MIN_TOPICS_COVERED_LENGTH = 10
MAX_REASON_LENGTH = 500
DEFAULT_CANCELLATION_REASON = "No reason provided"

# Payment strategy thresholds
IMMEDIATE_CHARGE_WINDOW_HOURS = 24
DEFERRED_AUTH_THRESHOLD_HOURS = 7 * 24
DEFERRED_CHARGE_LEAD_HOURS = 24
AUTHORIZATION_EXPIRY_DAYS = 7

# Booking policy windows
CANCELLATION_WINDOW_HOURS = 24
TUTOR_RESCHEDULE_WINDOW_HOURS = 24

ADULT_AGE = 18

# Stripe references look like "pi_3Nk..."; anything else stored in
# payment_intent_id is treated as a placeholder.
PAYMENT_INTENT_PREFIX = "pi_"
