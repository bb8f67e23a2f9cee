"""Order finalizer: turns the pending cart into a completed, paid order.

``begin_checkout`` prices the cart and opens a payment session with the
provider. ``complete_checkout`` verifies the payment and then, in a single
transaction, decrements stock, snapshots the shipping address, marks the
payment successful and moves the order from PENDING to COMPLETED. Once the
provider has approved the payment, any later failure refunds it and marks it
REFUNDED, including a cart edited after the session opened. Line items are
kept; history and cart differ only by status.
"""
from storefront.extensions import db
from storefront.errors import (
    CheckoutConflictError,
    EmptyCartError,
    InsufficientStockError,
    InvalidAddressError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentError,
    StorageError,
    StorefrontError,
)
from storefront.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
    Product,
    ShippingSnapshot,
)
from storefront.services.audit_service import audit_user
from storefront.services.cart_service import TWO_PLACES, find_pending_order
from storefront.services.locks import cart_locks
from storefront.services.payment_gateway import (
    REJECTED,
    ManifestLine,
    ReturnUrls,
)
from sqlalchemy.exc import SQLAlchemyError
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging

logger = logging.getLogger(__name__)

SHIPPING_FLAT_RATE = Decimal('0.00')

REQUIRED_ADDRESS_FIELDS = (
    'full_name',
    'address',
    'city',
    'state',
    'zip_code',
    'phone',
)
# Field names used by the browser checkout form.
ADDRESS_ALIASES = {
    'fullName': 'full_name',
    'zipCode': 'zip_code',
}


@dataclass
class CheckoutResult:
    order: Order
    already_completed: bool = False


def default_return_urls(site_url):
    base = (site_url or '').rstrip('/')
    return ReturnUrls(
        success=f"{base}/success",
        failure=f"{base}/checkout?payment=failure",
        pending=f"{base}/success?payment=pending",
    )


def validate_shipping_address(shipping_address):
    if not isinstance(shipping_address, dict):
        raise InvalidAddressError(
            missing_fields=list(REQUIRED_ADDRESS_FIELDS))

    normalized = {}
    for key, value in shipping_address.items():
        normalized[ADDRESS_ALIASES.get(key, key)] = value

    cleaned = {}
    missing = []
    for field in REQUIRED_ADDRESS_FIELDS:
        value = normalized.get(field)
        value = str(value).strip() if value is not None else ''
        if not value:
            missing.append(field)
        cleaned[field] = value

    if missing:
        raise InvalidAddressError(
            f"{missing[0]} cannot be empty",
            missing_fields=missing)
    return cleaned


def summarize(items):
    subtotal = sum(
        (item.line_total for item in items),
        Decimal('0.00')).quantize(TWO_PLACES)
    shipping = SHIPPING_FLAT_RATE
    return {
        'subtotal': subtotal,
        'shipping': shipping,
        'total': (subtotal + shipping).quantize(TWO_PLACES),
    }


def begin_checkout(user, gateway, return_urls, currency='USD'):
    """Price the cart and open a payment session for it.

    Returns a dict with the session token, the provider redirect URL (if
    any), the order id and the summary amounts as Decimals.
    """
    with cart_locks.hold(user.id):
        try:
            order = find_pending_order(user)
            items = order.items.all() if order else []
            if not items:
                raise EmptyCartError()

            summary = summarize(items)
            manifest = [
                ManifestLine(
                    title=item.product.name,
                    unit_price=Decimal(item.price),
                    quantity=item.quantity,
                    currency_id=currency,
                    description=item.product.description,
                    picture_url=item.product.image_url,
                )
                for item in items
            ]
        except StorefrontError:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Checkout load error: {e}", exc_info=True)
            raise StorageError() from e

        session = gateway.create_session(manifest, return_urls, order.id)

        try:
            payment = order.payment
            if payment is None:
                payment = PaymentTransaction(order_id=order.id)
                db.session.add(payment)
            payment.session_token = session.token
            payment.amount = summary['total']
            payment.status = PaymentStatus.INIT
            payment.provider_reference = None
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Payment session record error: {e}", exc_info=True)
            raise StorageError() from e

        order_id = order.id

    audit_user(
        user,
        'PAYMENT_SESSION_CREATE',
        target_type='ORDER',
        target_id=order_id,
        payload={'total': float(summary['total']), 'lines': len(manifest)})

    return {
        'order_id': order_id,
        'token': session.token,
        'redirect_url': session.redirect_url,
        'currency': currency,
        **summary,
    }


def _decrement_stock(items):
    # Fixed product order keeps row locks deadlock-free.
    for item in sorted(items, key=lambda i: i.product_id):
        updated = Product.query.filter(
            Product.id == item.product_id,
            Product.stock >= item.quantity
        ).update(
            {Product.stock: Product.stock - item.quantity},
            synchronize_session=False)
        if updated != 1:
            raise InsufficientStockError(
                f"Product {item.product.name} has insufficient stock")


def _compensate(gateway, token, order_id):
    try:
        gateway.refund(token)
    except PaymentError as e:
        logger.error(
            "Refund for session %s (order %s) failed: %s; manual "
            "reconciliation required", token, order_id, e)
        return

    logger.warning(
        "Refunded payment session %s after failed completion of order %s",
        token,
        order_id)
    try:
        PaymentTransaction.query.filter_by(session_token=token).update(
            {PaymentTransaction.status: PaymentStatus.REFUNDED},
            synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(
            f"Could not record refund of session {token}: {e}",
            exc_info=True)


def _verify_cart(order, payment, decrement_stock):
    items = order.items.all()
    if not items:
        raise EmptyCartError()

    total = summarize(items)['total']
    if total != Decimal(payment.amount).quantize(TWO_PLACES):
        raise CheckoutConflictError()

    if decrement_stock:
        for item in items:
            if item.product.stock < item.quantity:
                raise InsufficientStockError(
                    f"Product {item.product.name} has insufficient stock")
    return items, total


def complete_checkout(
        user,
        order_id,
        shipping_address,
        session_token,
        gateway,
        decrement_stock=True):
    """Finalize the order paid through ``session_token``.

    The buyer pays at the provider before this runs, so once the provider
    reports the payment approved, every failure refunds it.
    """
    address = validate_shipping_address(shipping_address)

    with cart_locks.hold(user.id):
        try:
            order = db.session.get(Order, order_id)
            if order is None or order.user_id != user.id:
                raise NotFoundError('Order not found')

            if order.status == OrderStatus.COMPLETED:
                logger.info(
                    "Order %s already completed; repeated checkout ignored",
                    order.id)
                return CheckoutResult(order=order, already_completed=True)

            payment = order.payment
            if payment is None or payment.session_token != session_token:
                raise CheckoutConflictError(
                    'Payment session does not match this order')
            if payment.status == PaymentStatus.REFUNDED:
                raise CheckoutConflictError(
                    'Payment session was refunded, start checkout again')
        except StorefrontError:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Checkout load error: {e}", exc_info=True)
            raise StorageError() from e

        outcome = gateway.fetch_outcome(session_token)
        if not outcome.approved:
            if outcome.status == REJECTED:
                try:
                    payment.status = PaymentStatus.FAILED
                    db.session.commit()
                except SQLAlchemyError as e:
                    db.session.rollback()
                    logger.error(
                        f"Payment status update error: {e}", exc_info=True)
                    raise StorageError() from e
            raise PaymentDeclinedError(payment_status=outcome.status)

        try:
            items, total = _verify_cart(order, payment, decrement_stock)

            now = datetime.utcnow()
            transitioned = Order.query.filter_by(
                id=order.id,
                status=OrderStatus.PENDING
            ).update({
                Order.status: OrderStatus.COMPLETED,
                Order.total: total,
                Order.completed_at: now,
                Order.updated_at: now,
            }, synchronize_session='evaluate')
            if transitioned != 1:
                # Completed by a concurrent request with this same payment.
                db.session.rollback()
                order = db.session.get(Order, order_id)
                return CheckoutResult(order=order, already_completed=True)

            if decrement_stock:
                _decrement_stock(items)
            db.session.add(ShippingSnapshot(order_id=order.id, **address))
            payment.status = PaymentStatus.SUCCESS
            payment.provider_reference = outcome.reference
            db.session.commit()
        except StorefrontError:
            db.session.rollback()
            _compensate(gateway, session_token, order_id)
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(
                f"Checkout completion failed for order {order_id}: {e}",
                exc_info=True)
            _compensate(gateway, session_token, order_id)
            raise StorageError() from e

        logger.info(
            "Order %s completed for user %s, total %s",
            order.id,
            user.id,
            total)

    audit_user(
        user,
        'ORDER_COMPLETE',
        target_type='ORDER',
        target_id=order.id,
        payload={
            'total': float(total),
            'items': len(items),
            'provider_reference': outcome.reference})

    return CheckoutResult(order=order)
