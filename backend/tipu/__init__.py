"""Tipu tutoring marketplace backend: booking lifecycle and payment orchestration."""

__version__ = "0.1.0"
