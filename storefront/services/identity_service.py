from storefront.extensions import db
from storefront.errors import (
    AuthenticationError,
    StorageError,
    ValidationError,
)
from storefront.models import StoreProfile, User, UserRole
from storefront.services.audit_service import audit_user, log_audit
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from datetime import datetime
import logging
import re

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
MIN_PASSWORD_LENGTH = 6


def _parse_role(value):
    role = (value or 'CUSTOMER')
    role = role.value if isinstance(role, UserRole) else str(role).upper()
    try:
        return UserRole[role]
    except KeyError:
        return UserRole.CUSTOMER


def sign_up(email, password, attributes=None, admin_email_suffix=''):
    """Create an account.

    ``attributes`` carries ``role`` and, for store owners, ``store_name`` and
    ``description``. An ADMIN account always comes with its store profile.
    """
    attributes = attributes or {}
    email = (email or '').strip().lower()
    password = password or ''

    if not email or not password:
        raise ValidationError('Email and password cannot be empty')
    if not EMAIL_PATTERN.match(email):
        raise ValidationError('Invalid email address')
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f'Password must be at least {MIN_PASSWORD_LENGTH} characters')

    role = _parse_role(attributes.get('role'))
    store_name = None
    if role == UserRole.ADMIN:
        if admin_email_suffix and not email.endswith(admin_email_suffix):
            raise ValidationError(
                f'Store accounts must use an {admin_email_suffix} email')
        store_name = (attributes.get('store_name') or '').strip()
        if len(store_name) < 2 or len(store_name) > 100:
            raise ValidationError('Store name must be 2-100 characters')

    if User.query.filter_by(email=email).first():
        raise ValidationError('Email already registered')
    if store_name and StoreProfile.query.filter_by(
            store_name=store_name).first():
        raise ValidationError('Store name already taken')

    user = User(email=email, role=role)
    user.set_password(password)
    try:
        db.session.add(user)
        db.session.flush()
        if role == UserRole.ADMIN:
            description = (attributes.get('description') or '').strip()
            db.session.add(StoreProfile(
                user_id=user.id,
                store_name=store_name,
                description=description or None
            ))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError('Email or store name already registered')
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Sign up failed: {e}", exc_info=True)
        raise StorageError() from e

    audit_user(
        user,
        'REGISTER',
        target_type='USER',
        target_id=user.id,
        payload={'role': role.value, 'has_store': bool(store_name)})
    return user


def sign_in(email, password):
    email = (email or '').strip().lower()
    if not email or not password:
        raise ValidationError('Email and password cannot be empty')

    user = User.query.filter_by(email=email).first()
    if not user or not user.is_active or not user.check_password(password):
        log_audit(
            actor_id=None,
            actor_role='ANONYMOUS',
            action='LOGIN_FAILED',
            target_type='USER',
            target_id=None,
            payload={
                'reason': 'invalid_credentials' if user else 'user_not_found'})
        raise AuthenticationError()

    try:
        user.last_login_at = datetime.utcnow()
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Last login update failed: {e}", exc_info=True)
        raise StorageError() from e

    audit_user(user, 'LOGIN_SUCCESS', target_type='USER', target_id=user.id)
    return user


def session_payload(user):
    if user is None or not user.is_authenticated:
        return {'authenticated': False}
    payload = {
        'authenticated': True,
        'user_id': user.id,
        'email': user.email,
        'role': user.role.value,
    }
    if user.store_profile:
        payload['store'] = {
            'id': user.id,
            'store_name': user.store_profile.store_name,
            'description': user.store_profile.description,
        }
    return payload
