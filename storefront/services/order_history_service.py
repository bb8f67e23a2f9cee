from storefront.extensions import db
from storefront.models import Order, OrderStatus
from storefront.services.cart_service import serialize_item
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)


def list_completed_orders(user, page=1, per_page=20):
    """The user's completed orders, newest first.

    Storage errors are logged and produce an empty page.
    """
    page = max(1, page or 1)
    try:
        pagination = Order.query.filter_by(
            user_id=user.id,
            status=OrderStatus.COMPLETED
        ).order_by(
            Order.created_at.desc(),
            Order.id.desc()
        ).paginate(page=page, per_page=per_page, error_out=False)
        return {
            'items': pagination.items,
            'page': pagination.page,
            'total': pagination.total,
            'pages': pagination.pages,
        }
    except SQLAlchemyError as e:
        logger.error(f"Order history error: {e}", exc_info=True)
        db.session.rollback()
        return {'items': [], 'page': page, 'total': 0, 'pages': 0}


def get_order(user, order_id):
    try:
        return Order.query.filter_by(
            id=order_id,
            user_id=user.id
        ).first()
    except SQLAlchemyError as e:
        logger.error(f"Order lookup error: {e}", exc_info=True)
        db.session.rollback()
        return None


def serialize_order(order):
    payment_payload = None
    if order.payment:
        payment_payload = {
            'status': order.payment.status.value,
            'amount': float(order.payment.amount),
            'provider_reference': order.payment.provider_reference,
        }

    shipping = order.shipping_snapshot
    return {
        'id': order.id,
        'status': order.status.value,
        'total': float(order.total),
        'created_at': order.created_at.isoformat(),
        'completed_at': (
            order.completed_at.isoformat() if order.completed_at else None
        ),
        'items': [serialize_item(i) for i in order.items],
        'payment': payment_payload,
        'shipping_address': shipping.to_dict() if shipping else None,
    }
