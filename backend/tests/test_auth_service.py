# Overview: Pytest coverage for credentials and session tokens.

from datetime import timedelta

import pytest

from storekeeper.errors import AccessDeniedError, ConflictError, NotFoundError
from storekeeper.extensions import db
from storekeeper.models import SessionToken, User
from storekeeper.models.auth import ROLE_SELLER
from storekeeper.services import auth_service, session_service
from storekeeper.services.auth_service import PasswordValidationError
from storekeeper.validation import ValidationError


class TestUsers:

    def test_password_is_hashed(self, db_session, seller_a):
        assert seller_a.password_hash != "Password123"
        assert auth_service.verify_password("Password123", seller_a.password_hash)

    def test_weak_password_rejected(self, db_session, store_a):
        with pytest.raises(PasswordValidationError):
            auth_service.create_user("weak@example.com", "Weak", "short", store_id=store_a.id)

    def test_duplicate_email_conflicts(self, db_session, seller_a, store_a):
        with pytest.raises(ConflictError):
            auth_service.create_user("SELLER.A@example.com", "Again", "Password123", store_id=store_a.id)

    def test_seller_needs_store(self, db_session):
        with pytest.raises((ValidationError, NotFoundError)):
            auth_service.create_user("nostore@example.com", "No Store", "Password123", role=ROLE_SELLER)

    def test_authenticate(self, db_session, seller_a):
        assert auth_service.authenticate("seller.a@example.com", "Password123").id == seller_a.id
        assert auth_service.authenticate("seller.a@example.com", "wrong-pass1") is None

    def test_cannot_deactivate_self(self, db_session, admin):
        with pytest.raises(ConflictError):
            auth_service.deactivate_user(admin.id, acting_user_id=admin.id)

    def test_get_user_is_self_or_admin(self, db_session, admin, seller_a, seller_b):
        assert auth_service.get_user(seller_a.id, acting_user=seller_a).id == seller_a.id
        assert auth_service.get_user(seller_b.id, acting_user=admin).id == seller_b.id
        with pytest.raises(AccessDeniedError):
            auth_service.get_user(seller_b.id, acting_user=seller_a)
        with pytest.raises(NotFoundError):
            auth_service.get_user(99999, acting_user=admin)

    def test_profile_update_limited_to_name_and_language(self, db_session, seller_a, store_b):
        user = auth_service.update_profile(seller_a.id, {"name": "  Moussa ", "language": "sw"})
        assert user.name == "Moussa"
        assert user.language == "sw"

        with pytest.raises(ValidationError):
            auth_service.update_profile(seller_a.id, {"store_id": store_b.id})
        with pytest.raises(ValidationError):
            auth_service.update_profile(seller_a.id, {"language": "de"})
        assert db.session.get(User, seller_a.id).store_id != store_b.id


class TestSessions:

    def test_session_captures_store(self, db_session, seller_a, store_a):
        session, token = session_service.create_session(user_id=seller_a.id)

        assert session.store_id == store_a.id
        assert session.token_hash != token

        context = session_service.validate_session(token)
        assert context.access.store_id == store_a.id
        assert context.access.is_admin is False

    def test_expired_session_rejected(self, db_session, seller_a):
        session, token = session_service.create_session(user_id=seller_a.id)
        session.expires_at = session.created_at - timedelta(seconds=1)
        db.session.commit()

        assert session_service.validate_session(token) is None

    def test_idle_session_revoked(self, db_session, seller_a):
        session, token = session_service.create_session(user_id=seller_a.id)
        session.last_used_at = session.last_used_at - timedelta(hours=13)
        db.session.commit()

        assert session_service.validate_session(token) is None
        assert db.session.get(SessionToken, session.id).revoked_reason == "Idle timeout"

    def test_store_deactivation_ends_seller_sessions(self, db_session, seller_a, store_a):
        session, token = session_service.create_session(user_id=seller_a.id)
        store_a.is_active = False
        db.session.commit()

        assert session_service.validate_session(token) is None
        assert db.session.get(SessionToken, session.id).revoked_reason == "Store deactivated"

    def test_revoke_all(self, db_session, seller_a):
        session_service.create_session(user_id=seller_a.id)
        session_service.create_session(user_id=seller_a.id)
        assert session_service.revoke_all_user_sessions(seller_a.id) == 2
