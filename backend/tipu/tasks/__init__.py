"""Celery application and periodic payment tasks."""
