# middleware.py
from functools import wraps

from flask import request, jsonify, g

from auth import verify_jwt


def _bearer_token():
    header = request.headers.get('Authorization', '')
    if not header:
        return None, 'Token is missing'

    parts = header.split(' ')
    if len(parts) != 2 or parts[0].lower() != 'bearer' or not parts[1]:
        return None, 'Invalid Authorization header format'

    return parts[1], None


def jwt_required(f):
    """Reject the request unless it carries a valid Bearer token"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token, error = _bearer_token()
        if error:
            return jsonify({'success': False, 'error': error}), 401

        verification = verify_jwt(token)
        if not verification['valid']:
            return jsonify({'success': False, 'error': verification['error']}), 401

        g.current_user = verification['payload']
        return f(*args, **kwargs)

    return decorated_function


def admin_required(f):
    """Use after jwt_required"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify({'success': False, 'error': 'Authentication required'}), 401

        if user.get('role') != 'admin':
            return jsonify({'success': False, 'error': 'Admin access required'}), 403

        return f(*args, **kwargs)

    return decorated_function


def get_current_user():
    return getattr(g, 'current_user', None)
