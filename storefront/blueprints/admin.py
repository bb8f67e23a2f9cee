from flask import Blueprint, jsonify
from flask_login import login_required, current_user
from storefront.middleware import role_required
from storefront.services import product_admin_service
from storefront.services.catalog_service import serialize_product
from storefront.utils import request_data
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('admin', __name__)


@bp.route('/api/admin/products', methods=['GET'])
@bp.route('/products', methods=['GET'])
@login_required
@role_required('ADMIN')
def list_products():
    products = product_admin_service.list_store_products(current_user)
    profile = current_user.store_profile
    return jsonify({
        'store': {
            'id': current_user.id,
            'store_name': profile.store_name if profile else None,
            'description': profile.description if profile else None,
        },
        'products': [serialize_product(p) for p in products],
    })


@bp.route('/api/admin/products', methods=['POST'])
@login_required
@role_required('ADMIN')
def create_product():
    product = product_admin_service.create_product(
        current_user, request_data())
    return jsonify({'ok': True, 'product': serialize_product(product)}), 201


@bp.route('/api/admin/products/<int:product_id>', methods=['PUT', 'PATCH'])
@login_required
@role_required('ADMIN')
def update_product(product_id):
    product = product_admin_service.update_product(
        current_user, product_id, request_data())
    return jsonify({'ok': True, 'product': serialize_product(product)})


@bp.route('/api/admin/products/<int:product_id>', methods=['DELETE'])
@login_required
@role_required('ADMIN')
def delete_product(product_id):
    carts = product_admin_service.delete_product(current_user, product_id)
    return jsonify({'ok': True, 'carts_updated': carts})
