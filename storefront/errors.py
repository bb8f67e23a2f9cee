from flask import jsonify
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Required settings are missing at startup."""


class StorefrontError(Exception):
    status_code = 400
    code = 'error'

    def __init__(self, message=None, **details):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        payload = {'error': self.message, 'code': self.code}
        payload.update(self.details)
        return payload


# Validation: reported to the user, nothing mutated.

class ValidationError(StorefrontError):
    code = 'validation_error'


class EmptyCartError(ValidationError):
    """Cart is empty"""
    code = 'empty_cart'


class InvalidAddressError(ValidationError):
    """Shipping address is incomplete"""
    code = 'invalid_address'


class InvalidQuantityError(ValidationError):
    """Quantity must be a positive integer"""
    code = 'invalid_quantity'


class InsufficientStockError(ValidationError):
    """Insufficient stock"""
    code = 'insufficient_stock'


class InvalidMessageError(ValidationError):
    """Message cannot be empty"""
    code = 'invalid_message'


class AuthenticationError(StorefrontError):
    """Invalid email or password"""
    status_code = 401
    code = 'invalid_credentials'


class NotFoundError(StorefrontError):
    """Resource not found"""
    status_code = 404
    code = 'not_found'


class PermissionDeniedError(StorefrontError):
    """Insufficient permissions"""
    status_code = 403
    code = 'forbidden'


class OrderStateError(StorefrontError):
    """Order status does not allow this operation"""
    status_code = 409
    code = 'order_state'


class CheckoutConflictError(StorefrontError):
    """Cart changed since the payment session was created"""
    status_code = 409
    code = 'checkout_conflict'


# Collaborator failures: storage or payment provider.

class CollaboratorError(StorefrontError):
    status_code = 503
    code = 'collaborator_error'


class StorageError(CollaboratorError):
    """Storage is temporarily unavailable"""
    code = 'storage_error'


class PaymentError(CollaboratorError):
    """Payment provider error"""
    status_code = 502
    code = 'payment_error'


class PaymentDeclinedError(PaymentError):
    """Payment was not approved"""
    status_code = 402
    code = 'payment_declined'


def register_error_handlers(app):

    @app.errorhandler(StorefrontError)
    def handle_storefront_error(exc):
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.__class__.__name__, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_storage_error(exc):
        from storefront.extensions import db

        logger.error("Unhandled storage error: %s", exc, exc_info=True)
        db.session.rollback()
        return jsonify(StorageError().to_dict()), StorageError.status_code
