"""
Celery tasks for scheduled payment processing.

Each task opens its own session, runs one ``ScheduledPaymentService`` job and
closes the session. Database failures are retried by Celery; per-booking
payment failures are recorded on the booking and never fail the task.
"""

from datetime import datetime, timezone
from functools import lru_cache
import logging
from typing import Any, Callable, Dict, ParamSpec, Protocol, TypeVar, cast

from celery.result import AsyncResult
from sqlalchemy.orm import Session

from tipu.core.config import get_settings
from tipu.core.exceptions import RepositoryException, ServiceException
from tipu.database import SessionLocal
from tipu.integrations import (
    MeetingClient,
    PaymentGateway,
    build_meeting_client,
    build_payment_gateway,
)
from tipu.services.dependencies import ServiceBundle, build_services
from tipu.tasks.celery_app import celery_app

P = ParamSpec("P")
R = TypeVar("R", covariant=True)

logger = logging.getLogger(__name__)


class TaskWrapper(Protocol[P, R]):
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> R:
        ...

    delay: Callable[..., AsyncResult]
    apply_async: Callable[..., AsyncResult]


def typed_task(
    *task_args: Any, **task_kwargs: Any
) -> Callable[[Callable[P, R]], TaskWrapper[P, R]]:
    """Return a typed Celery task decorator for mypy."""

    return cast(
        Callable[[Callable[P, R]], TaskWrapper[P, R]],
        celery_app.task(*task_args, **task_kwargs),
    )


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    return build_payment_gateway(get_settings())


@lru_cache(maxsize=1)
def get_meeting_client() -> MeetingClient:
    return build_meeting_client(get_settings())


def services_for(db: Session) -> ServiceBundle:
    return build_services(db, get_settings(), get_payment_gateway(), get_meeting_client())


def _run_job(task: Any, job_name: str, job: Callable[[ServiceBundle], Any]) -> Dict[str, Any]:
    db: Session = SessionLocal()
    try:
        outcome = job(services_for(db))
        result = dict(outcome) if isinstance(outcome, dict) else {"count": outcome}
        result["processed_at"] = datetime.now(timezone.utc).isoformat()
        logger.info("%s finished: %s", job_name, result)
        return result
    except (RepositoryException, ServiceException) as exc:
        logger.error("%s failed: %s", job_name, exc, exc_info=True)
        raise task.retry(exc=exc, countdown=60)
    finally:
        db.close()


@typed_task(bind=True, max_retries=3, name="tipu.tasks.payment_tasks.process_scheduled_payments")
def process_scheduled_payments(self: Any) -> Dict[str, Any]:
    """Charge deferred-authorization bookings whose charge time has arrived."""
    return _run_job(
        self,
        "process_scheduled_payments",
        lambda services: services.scheduled_payments.process_scheduled_payments(),
    )


@typed_task(bind=True, max_retries=3, name="tipu.tasks.payment_tasks.retry_failed_payments")
def retry_failed_payments(self: Any) -> Dict[str, Any]:
    """Re-queue failed charges whose cooldown has passed."""
    return _run_job(
        self,
        "retry_failed_payments",
        lambda services: services.scheduled_payments.retry_failed_payments(),
    )


@typed_task(bind=True, max_retries=3, name="tipu.tasks.payment_tasks.reconcile_payment_markers")
def reconcile_payment_markers(self: Any) -> Dict[str, Any]:
    """Finish webhook confirmations that failed after their marker was stored."""
    return _run_job(
        self,
        "reconcile_payment_markers",
        lambda services: services.scheduled_payments.reconcile_payment_markers(),
    )


@typed_task(
    bind=True, max_retries=3, name="tipu.tasks.payment_tasks.sweep_expired_authorizations"
)
def sweep_expired_authorizations(self: Any) -> Dict[str, Any]:
    return _run_job(
        self,
        "sweep_expired_authorizations",
        lambda services: services.scheduled_payments.sweep_expired_authorizations(),
    )


@typed_task(bind=True, max_retries=2, name="tipu.tasks.payment_tasks.purge_expired_markers")
def purge_expired_markers(self: Any) -> Dict[str, Any]:
    return _run_job(
        self,
        "purge_expired_markers",
        lambda services: {"deleted": services.scheduled_payments.purge_expired_markers()},
    )
