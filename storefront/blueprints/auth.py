from flask import Blueprint, current_app, jsonify, request, redirect, url_for
from flask_login import (
    login_user,
    logout_user,
    login_required,
    current_user,
)
from storefront.services import identity_service
from storefront.services.audit_service import audit_user
from storefront.utils import request_data
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('auth', __name__)


@bp.route('/api/auth/login', methods=['POST'])
@bp.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'GET':
        if current_user.is_authenticated:
            return redirect(url_for('products.index'))
        return jsonify({'message': 'Please use POST method to login'})

    data = request_data()
    user = identity_service.sign_in(
        data.get('email', ''),
        data.get('password', ''))
    login_user(user, remember=True)

    return jsonify({'ok': True, 'role': user.role.value, 'user_id': user.id})


@bp.route('/api/auth/register', methods=['POST'])
@bp.route('/register', methods=['GET', 'POST'])
def register():
    if request.method == 'GET':
        if current_user.is_authenticated:
            return redirect(url_for('products.index'))
        return jsonify({
            'roles': ['CUSTOMER', 'ADMIN'],
            'admin_email_suffix': current_app.config.get(
                'ADMIN_SIGNUP_EMAIL_SUFFIX') or None,
        })

    data = request_data()
    user = identity_service.sign_up(
        data.get('email', ''),
        data.get('password', ''),
        attributes={
            'role': data.get('role'),
            'store_name': data.get('store_name'),
            'description': data.get('description'),
        },
        admin_email_suffix=current_app.config.get(
            'ADMIN_SIGNUP_EMAIL_SUFFIX', ''))

    # Auto login
    login_user(user, remember=True)

    return jsonify(
        {'ok': True, 'role': user.role.value, 'user_id': user.id}), 201


@bp.route('/api/auth/logout', methods=['POST'])
@bp.route('/logout', methods=['POST'])
@login_required
def logout():
    audit_user(
        current_user,
        'LOGOUT',
        target_type='USER',
        target_id=current_user.id)
    logout_user()
    return jsonify({'ok': True})


@bp.route('/api/auth/session', methods=['GET'])
def session():
    return jsonify(identity_service.session_payload(current_user))
