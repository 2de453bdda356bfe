"""
Restaurant application tests.

Verifies:
- Any signed-in user may apply; commission is not theirs to set
- One pending application per applicant
- Approval creates a closed restaurant, promotes the applicant and is audited
- An application is reviewed exactly once
- Review routes are admin-only
"""

import pytest
from sqlalchemy.exc import IntegrityError

from chowline.errors import AlreadyExists, IllegalTransition, NotFound, ValidationError
from chowline.extensions import db
from chowline.models import AuditEntry, Restaurant, RestaurantApplication
from chowline.services import application_service
from conftest import auth_headers


APPLICATION = {
    "name": "Ofe Owerri Kitchen",
    "phone": "08031234567",
    "address": "4 Factory Road, Aba",
    "delivery_fee": 700,
}


def submit(customer, **overrides):
    return application_service.submit_application(customer, {**APPLICATION, **overrides})


# =============================================================================
# SUBMISSION
# =============================================================================


class TestSubmit:

    def test_submit_is_audited(self, customer):
        application = submit(customer)

        assert application.status == "pending"
        assert application.applicant_id == customer.id
        entry = db.session.query(AuditEntry).filter_by(action="restaurant_application_submitted").one()
        assert entry.actor_id == customer.id
        assert entry.target_id == str(application.id)

    def test_one_pending_per_applicant(self, customer):
        first = submit(customer)

        with pytest.raises(AlreadyExists) as exc:
            submit(customer, name="Second Kitchen")

        assert exc.value.details == {"application_id": first.id}
        assert db.session.query(RestaurantApplication).count() == 1

    def test_concurrent_duplicate_hits_index(self, monkeypatch, customer):
        first = submit(customer)
        real_lookup = application_service.pending_application_for
        lookups = []

        def racing_lookup(applicant_id):
            lookups.append(applicant_id)
            return None if len(lookups) == 1 else real_lookup(applicant_id)

        monkeypatch.setattr(application_service, "pending_application_for", racing_lookup)

        with pytest.raises(AlreadyExists) as exc:
            submit(customer, name="Second Kitchen")
        assert exc.value.details == {"application_id": first.id}

    def test_may_reapply_after_rejection(self, customer, admin):
        first = submit(customer)
        application_service.reject_application(first.id, admin, "Incomplete address")

        second = submit(customer)
        assert second.id != first.id

    def test_second_pending_refused_in_storage(self, customer):
        submit(customer)
        db.session.add(RestaurantApplication(applicant_id=customer.id, name="Bypass", status="pending"))

        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


# =============================================================================
# REVIEW
# =============================================================================


class TestReview:

    def test_approve(self, customer, admin):
        application = submit(customer)

        application, restaurant = application_service.approve_application(
            application.id, admin, commission_rate_bps=750
        )

        assert application.status == "approved"
        assert application.reviewed_by == admin.id
        assert application.restaurant_id == restaurant.id
        assert restaurant.owner_id == customer.id
        assert restaurant.name == APPLICATION["name"]
        assert restaurant.delivery_fee == 700
        assert restaurant.commission_rate == "7.50"
        assert restaurant.is_active is True
        assert restaurant.is_open is False

        db.session.refresh(customer)
        assert customer.role == "restaurant_owner"

        actions = [e.action for e in db.session.query(AuditEntry).order_by(AuditEntry.id).all()]
        assert actions == ["restaurant_application_submitted", "user_role_changed", "application_approved"]

    def test_default_commission(self, customer, admin):
        application = submit(customer)
        _, restaurant = application_service.approve_application(application.id, admin)
        assert restaurant.commission_rate_bps == application_service.DEFAULT_COMMISSION_BPS

    def test_existing_owner_keeps_role(self, owner, admin):
        application = submit(owner)
        application_service.approve_application(application.id, admin)

        assert db.session.query(AuditEntry).filter_by(action="user_role_changed").count() == 0

    def test_reviewed_once(self, customer, admin):
        application = submit(customer)
        application_service.approve_application(application.id, admin)

        with pytest.raises(IllegalTransition) as exc:
            application_service.approve_application(application.id, admin)
        assert exc.value.details == {"application_id": application.id, "status": "approved"}

        with pytest.raises(IllegalTransition):
            application_service.reject_application(application.id, admin, "Changed our mind")

        assert db.session.query(Restaurant).count() == 1

    def test_reject(self, customer, admin):
        application = submit(customer)

        application = application_service.reject_application(application.id, admin, "  Duplicate listing ")

        assert application.status == "rejected"
        assert application.rejection_reason == "Duplicate listing"
        assert db.session.query(Restaurant).count() == 0
        entry = db.session.query(AuditEntry).filter_by(action="application_rejected").one()
        assert entry.entry_metadata["reason"] == "Duplicate listing"

    @pytest.mark.parametrize("reason", [None, "", "no"])
    def test_reject_requires_reason(self, customer, admin, reason):
        application = submit(customer)
        with pytest.raises(ValidationError) as exc:
            application_service.reject_application(application.id, admin, reason)
        assert exc.value.field == "rejection_reason"

    def test_unknown_application(self, admin):
        with pytest.raises(NotFound):
            application_service.approve_application(9999, admin)


# =============================================================================
# HTTP SURFACE
# =============================================================================


class TestApplicationRoutes:

    def test_apply_requires_auth(self, client):
        resp = client.post("/api/restaurant/applications", json=APPLICATION)
        assert resp.status_code == 401

    def test_apply_and_list_mine(self, client, customer):
        headers = auth_headers(customer)

        resp = client.post("/api/restaurant/applications", json=APPLICATION, headers=headers)
        assert resp.status_code == 201
        assert resp.get_json()["application"]["status"] == "pending"

        resp = client.post("/api/restaurant/applications", json=APPLICATION, headers=headers)
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "ALREADY_EXISTS"

        resp = client.get("/api/restaurant/applications/mine", headers=headers)
        assert [a["name"] for a in resp.get_json()["applications"]] == [APPLICATION["name"]]

    def test_applicant_cannot_set_commission(self, client, customer):
        resp = client.post(
            "/api/restaurant/applications",
            json={**APPLICATION, "commission_rate": "1"},
            headers=auth_headers(customer),
        )
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "commission_rate"

    def test_review_is_admin_only(self, client, customer, owner):
        application = submit(customer)
        for user in (customer, owner):
            resp = client.post(f"/api/admin/applications/{application.id}/approve", headers=auth_headers(user))
            assert resp.status_code == 403

    def test_admin_approves(self, client, customer, admin):
        application = submit(customer)
        customer_headers = auth_headers(customer)

        resp = client.get("/api/admin/applications?status=pending", headers=auth_headers(admin))
        assert resp.get_json()["total"] == 1

        resp = client.post(
            f"/api/admin/applications/{application.id}/approve",
            json={"commission_rate": "8"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["application"]["status"] == "approved"
        assert body["restaurant"]["commission_rate"] == "8.00"

        # The promotion applies to the applicant's existing session
        resp = client.get("/api/restaurant/mine", headers=customer_headers)
        assert resp.status_code == 200
        assert [r["id"] for r in resp.get_json()["restaurants"]] == [body["restaurant"]["id"]]

    def test_admin_rejects(self, client, customer, admin):
        application = submit(customer)

        resp = client.post(
            f"/api/admin/applications/{application.id}/reject",
            json={"rejection_reason": "Outside delivery area"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 200
        assert resp.get_json()["application"]["status"] == "rejected"

        resp = client.post(
            f"/api/admin/applications/{application.id}/reject",
            json={"rejection_reason": "Outside delivery area"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 422
        assert resp.get_json()["code"] == "ILLEGAL_TRANSITION"
