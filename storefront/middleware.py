from flask import request, redirect, url_for, jsonify, abort
from flask_login import current_user
from functools import wraps
import logging

logger = logging.getLogger(__name__)

# Exact paths that never require login
LOGIN_WHITELIST = [
    '/',
    '/login',
    '/register',
    '/favicon.ico',
    '/api/auth/login',
    '/api/auth/register',
    '/api/auth/session',
]


def is_public_browse_path(path: str) -> bool:
    if path == '/':
        return True
    if path.startswith('/product/'):
        return True
    if path.startswith('/api/products'):
        return True
    if path == '/api/categories':
        return True
    return False


def setup_auth_middleware(app):

    @app.before_request
    def require_login():
        path = request.path
        method = request.method.upper()

        if path in LOGIN_WHITELIST:
            return None

        # Anonymous catalog browsing
        if method in (
            'GET',
            'HEAD',
                'OPTIONS') and is_public_browse_path(path):
            return None

        if not current_user.is_authenticated:
            # API requests return 401, page requests redirect to login
            if path.startswith('/api/'):
                return jsonify({'error': 'Not logged in',
                               'login_required': True}), 401
            return redirect(url_for('auth.login'))

        return None


def role_required(*allowed_roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                if request.path.startswith('/api/'):
                    return jsonify({'error': 'Not logged in'}), 401
                return redirect(url_for('auth.login'))

            # allowed_roles is a list of role names.
            if current_user.role.value not in allowed_roles:
                logger.warning(
                    "User %s attempted to access roles %s, current role: %s",
                    current_user.id,
                    allowed_roles,
                    current_user.role.value,
                )
                if request.path.startswith('/api/'):
                    return jsonify({'error': 'Insufficient permissions',
                                    'code': 'forbidden'}), 403
                abort(403)

            return f(*args, **kwargs)
        return decorated_function
    return decorator
