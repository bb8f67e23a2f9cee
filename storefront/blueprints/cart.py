from flask import Blueprint, jsonify
from flask_login import login_required, current_user
from storefront.errors import ValidationError
from storefront.services import cart_service
from storefront.utils import request_data
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('cart', __name__)


@bp.route('/api/cart', methods=['GET'])
@bp.route('/cart', methods=['GET'])
@login_required
def get_cart():
    return jsonify(cart_service.get_cart(current_user))


@bp.route('/api/cart/items', methods=['POST'])
@login_required
def add_cart_item():
    data = request_data()
    product_id = data.get('product_id')
    if not product_id:
        raise ValidationError('Product ID cannot be empty')

    cart = cart_service.add_item(
        current_user,
        product_id,
        data.get('quantity', 1))
    return jsonify({'ok': True, 'cart': cart}), 201


@bp.route('/api/cart/items/<int:item_id>', methods=['PATCH'])
@login_required
def update_cart_item(item_id):
    data = request_data()
    if data.get('quantity') is None:
        raise ValidationError('Quantity cannot be empty')

    cart = cart_service.update_quantity(
        current_user,
        item_id,
        data['quantity'])
    return jsonify({'ok': True, 'cart': cart})


@bp.route('/api/cart/items/<int:item_id>', methods=['DELETE'])
@login_required
def remove_cart_item(item_id):
    cart = cart_service.remove_item(current_user, item_id)
    return jsonify({'ok': True, 'cart': cart})
