# Overview: Restaurant applications; submitted by users, reviewed once by an administrator.

"""
Restaurant Applications

FLOW:
- Any signed-in user may apply with listing details. The commission rate is
  an administrative decision taken at approval
- One pending application per applicant (pre-check, backed by a partial
  unique index for concurrent submissions)
- An administrator approves or rejects a pending application exactly once;
  the review is a conditional update on status = 'pending'

APPROVAL (one transaction):
1. Restaurant created listed but closed, owned by the applicant
2. Applicant promoted to restaurant_owner (user_role_changed); admins and
   existing owners keep their role
3. Application marked approved with the new restaurant_id
4. application_approved recorded
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import AlreadyExists, IllegalTransition, NotFound, PersistenceFailure, ValidationError
from ..extensions import db
from ..models import Restaurant, RestaurantApplication, User
from ..models.applications import (
    APPLICATION_APPROVED,
    APPLICATION_PENDING,
    APPLICATION_REJECTED,
    VALID_APPLICATION_STATUSES,
)
from ..models.catalog import bps_to_percent
from ..models.identity import ROLE_ADMIN, ROLE_RESTAURANT_OWNER
from ..validation import require_text
from . import audit_service, auth_service
from .concurrency import lock_for_update, run_with_retry
from chowline.time_utils import utcnow


# Applied when the reviewer does not name a rate (10.00%)
DEFAULT_COMMISSION_BPS = 1000

MIN_REJECTION_REASON_LENGTH = 5


def pending_application_for(applicant_id: int) -> RestaurantApplication | None:
    return (
        db.session.query(RestaurantApplication)
        .filter_by(applicant_id=applicant_id, status=APPLICATION_PENDING)
        .first()
    )


def _pending_exists(existing: RestaurantApplication) -> AlreadyExists:
    return AlreadyExists(
        "You already have a pending application",
        details={"application_id": existing.id},
    )


def _already_reviewed(application: RestaurantApplication) -> IllegalTransition:
    return IllegalTransition(
        "Application already reviewed",
        details={"application_id": application.id, "status": application.status},
    )


def submit_application(
    applicant: User,
    patch: dict,
    *,
    ip_address: str | None = None,
) -> RestaurantApplication:
    """
    Raises:
        AlreadyExists: the applicant has a pending application (details
            carry its application_id)
    """
    existing = pending_application_for(applicant.id)
    if existing is not None:
        raise _pending_exists(existing)

    def _op() -> RestaurantApplication:
        application = RestaurantApplication(
            applicant_id=applicant.id,
            status=APPLICATION_PENDING,
            created_at=utcnow(),
            **patch,
        )
        db.session.add(application)
        db.session.flush()

        audit_service.record(
            "restaurant_application_submitted",
            actor_id=applicant.id,
            target_type="restaurant_application",
            target_id=application.id,
            metadata={"name": application.name},
            ip_address=ip_address,
        )
        db.session.commit()
        return application

    try:
        application = run_with_retry(_op)
    except IntegrityError as exc:
        existing = pending_application_for(applicant.id)
        if existing is None:
            current_app.logger.error("Application insert failed for user %s: %s", applicant.id, exc.orig)
            raise PersistenceFailure() from exc
        raise _pending_exists(existing) from exc

    current_app.logger.info("Restaurant application %s submitted by user %s", application.id, applicant.id)
    return application


def applications_for(applicant_id: int) -> list[RestaurantApplication]:
    return (
        db.session.query(RestaurantApplication)
        .filter(RestaurantApplication.applicant_id == applicant_id)
        .order_by(RestaurantApplication.id.desc())
        .all()
    )


def get_application(application_id: int) -> RestaurantApplication:
    application = db.session.query(RestaurantApplication).filter_by(id=application_id).first()
    if application is None:
        raise NotFound("Application not found")
    return application


def list_applications(
    *,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[RestaurantApplication], int]:
    query = db.session.query(RestaurantApplication)
    if status:
        if status not in VALID_APPLICATION_STATUSES:
            raise ValidationError(f"Invalid status '{status}'", field="status")
        query = query.filter(RestaurantApplication.status == status)
    query = query.order_by(RestaurantApplication.created_at.asc(), RestaurantApplication.id.asc())

    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    total = query.count()
    return query.offset((page - 1) * limit).limit(limit).all(), total


def _close_pending(application_id: int, values: dict) -> None:
    """Conditional pending -> reviewed update; a lost race raises."""
    result = db.session.execute(
        update(RestaurantApplication)
        .where(
            RestaurantApplication.id == application_id,
            RestaurantApplication.status == APPLICATION_PENDING,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise _already_reviewed(get_application(application_id))


def _lock_pending(application_id: int) -> RestaurantApplication:
    application = lock_for_update(
        db.session.query(RestaurantApplication).filter_by(id=application_id)
    ).first()
    if application is None:
        raise NotFound("Application not found")
    if application.status != APPLICATION_PENDING:
        raise _already_reviewed(application)
    return application


def approve_application(
    application_id: int,
    actor: User,
    *,
    commission_rate_bps: int = DEFAULT_COMMISSION_BPS,
    ip_address: str | None = None,
) -> tuple[RestaurantApplication, Restaurant]:
    """
    Raises:
        NotFound: unknown application
        IllegalTransition: the application was already reviewed
    """
    def _op() -> tuple[RestaurantApplication, Restaurant]:
        application = _lock_pending(application_id)
        now = utcnow()

        restaurant = Restaurant(
            owner_id=application.applicant_id,
            name=application.name,
            phone=application.phone,
            address=application.address,
            delivery_fee=application.delivery_fee,
            commission_rate_bps=commission_rate_bps,
            is_active=True,
            is_open=False,
            created_at=now,
            updated_at=now,
        )
        db.session.add(restaurant)
        db.session.flush()

        _close_pending(application.id, {
            "status": APPLICATION_APPROVED,
            "reviewed_by": actor.id,
            "reviewed_at": now,
            "restaurant_id": restaurant.id,
        })

        applicant = db.session.query(User).filter_by(id=application.applicant_id).one()
        if applicant.role not in (ROLE_RESTAURANT_OWNER, ROLE_ADMIN):
            auth_service.apply_role_change(applicant, ROLE_RESTAURANT_OWNER, actor, ip_address=ip_address)

        audit_service.record(
            "application_approved",
            actor_id=actor.id,
            target_type="restaurant_application",
            target_id=application.id,
            metadata={
                "restaurant_id": restaurant.id,
                "applicant_id": applicant.id,
                "commission_rate": bps_to_percent(commission_rate_bps),
            },
            ip_address=ip_address,
        )
        db.session.commit()
        db.session.refresh(application)
        return application, restaurant

    application, restaurant = run_with_retry(_op)
    current_app.logger.info(
        "Application %s approved by admin %s: restaurant %s for user %s",
        application.id, actor.id, restaurant.id, application.applicant_id,
    )
    return application, restaurant


def reject_application(
    application_id: int,
    actor: User,
    reason,
    *,
    ip_address: str | None = None,
) -> RestaurantApplication:
    """
    Raises:
        ValidationError: reason missing or shorter than five characters
        NotFound: unknown application
        IllegalTransition: the application was already reviewed
    """
    reason = require_text(
        reason,
        "rejection_reason",
        min_length=MIN_REJECTION_REASON_LENGTH,
        max_length=255,
    )

    def _op() -> RestaurantApplication:
        application = _lock_pending(application_id)
        _close_pending(application.id, {
            "status": APPLICATION_REJECTED,
            "reviewed_by": actor.id,
            "reviewed_at": utcnow(),
            "rejection_reason": reason,
        })
        audit_service.record(
            "application_rejected",
            actor_id=actor.id,
            target_type="restaurant_application",
            target_id=application.id,
            metadata={"applicant_id": application.applicant_id, "reason": reason},
            ip_address=ip_address,
        )
        db.session.commit()
        db.session.refresh(application)
        return application

    application = run_with_retry(_op)
    current_app.logger.info("Application %s rejected by admin %s", application.id, actor.id)
    return application
