from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required, current_user
from storefront.errors import NotFoundError, ValidationError
from storefront.services import (
    cart_service,
    checkout_service,
    order_history_service,
)
from storefront.services.payment_gateway import get_gateway
from storefront.utils import page_args, paginated_payload, request_data
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('orders', __name__)


def _money(summary):
    return {k: float(v) for k, v in summary.items()}


@bp.route('/checkout', methods=['GET'])
@login_required
def checkout_page():
    cart = cart_service.get_cart(current_user)
    order = cart_service.find_pending_order(current_user)
    items = order.items.all() if order else []
    return jsonify({
        'cart': cart,
        'summary': _money(checkout_service.summarize(items)),
        'public_key': current_app.config['PAYMENT_PUBLIC_KEY'],
        'required_address_fields': list(
            checkout_service.REQUIRED_ADDRESS_FIELDS),
    })


@bp.route('/api/checkout/session', methods=['POST'])
@login_required
def create_payment_session():
    result = checkout_service.begin_checkout(
        current_user,
        get_gateway(),
        checkout_service.default_return_urls(current_app.config['SITE_URL']),
        currency=current_app.config.get('PAYMENT_CURRENCY', 'USD'))

    return jsonify({
        'ok': True,
        'order_id': result['order_id'],
        'token': result['token'],
        'redirect_url': result['redirect_url'],
        'public_key': current_app.config['PAYMENT_PUBLIC_KEY'],
        'currency': result['currency'],
        'subtotal': float(result['subtotal']),
        'shipping': float(result['shipping']),
        'total': float(result['total']),
    }), 201


@bp.route('/api/checkout/complete', methods=['POST'])
@login_required
def complete_checkout():
    data = request_data()
    order_id = data.get('order_id')
    session_token = data.get('session_token') or data.get('token')
    if not order_id or not session_token:
        raise ValidationError('Order ID and payment session are required')
    try:
        order_id = int(order_id)
    except (TypeError, ValueError):
        raise ValidationError('Invalid order ID')

    result = checkout_service.complete_checkout(
        current_user,
        order_id,
        data.get('shipping_address'),
        session_token,
        get_gateway(),
        decrement_stock=current_app.config.get(
            'DECREMENT_STOCK_ON_CHECKOUT', True))

    return jsonify({
        'ok': True,
        'already_completed': result.already_completed,
        'order': order_history_service.serialize_order(result.order),
    })


@bp.route('/success', methods=['GET'])
@login_required
def payment_return():
    # The provider appends the order id as external_reference
    order_id = request.args.get('external_reference', type=int) or \
        request.args.get('order_id', type=int)
    order = None
    if order_id:
        order = order_history_service.get_order(current_user, order_id)
    return jsonify({
        'payment_status': request.args.get('status')
        or request.args.get('payment'),
        'order': (
            order_history_service.serialize_order(order) if order else None
        ),
    })


@bp.route('/api/orders', methods=['GET'])
@bp.route('/orders', methods=['GET'])
@login_required
def list_orders():
    page, per_page = page_args()
    result = order_history_service.list_completed_orders(
        current_user, page=page, per_page=per_page)
    return jsonify(
        paginated_payload(result, order_history_service.serialize_order))


@bp.route('/api/orders/<int:order_id>', methods=['GET'])
@bp.route('/orders/<int:order_id>', methods=['GET'])
@login_required
def get_order(order_id):
    order = order_history_service.get_order(current_user, order_id)
    if order is None:
        raise NotFoundError('Order not found')
    return jsonify({'order': order_history_service.serialize_order(order)})
