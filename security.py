from functools import wraps

import bcrypt
from flask import flash, jsonify, redirect, request, session, url_for

from app_models import ROLES, User, db


def _to_bcrypt_secret(password: str) -> bytes:
    """bcrypt only uses the first 72 bytes of the password, truncate explicitly"""
    secret = password.encode('utf-8')
    return secret[:72]


def hash_password(password: str) -> str:
    """Return a bcrypt hash as a UTF-8 string suitable for the users table"""
    return bcrypt.hashpw(_to_bcrypt_secret(password), bcrypt.gensalt(rounds=12)).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(_to_bcrypt_secret(password), password_hash.encode('utf-8'))
    except ValueError:
        # Stored value is not a bcrypt hash
        return False


def add_security_headers(response):
    """Add security headers to response"""
    response.headers['Content-Security-Policy'] = (
        "default-src 'self'; "
        "style-src 'self' 'unsafe-inline' cdn.jsdelivr.net; "
        "img-src 'self' data:; "
        "form-action 'self'"
    )
    response.headers['X-Frame-Options'] = 'SAMEORIGIN'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['Referrer-Policy'] = 'same-origin'
    response.headers['Permissions-Policy'] = 'geolocation=(), microphone=(), camera=()'

    # Billing data must never be cached by browsers or proxies
    if response.mimetype == 'application/json' or response.mimetype == 'text/html':
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    return response


def init_security(app):
    """Initialize security features for the Flask app"""
    app.after_request(add_security_headers)


def authenticate(username, password):
    """Return the active user matching the credentials, or None"""
    if not username or not password:
        return None
    user = db.session.query(User).filter_by(username=username, is_active=True).first()
    if user and verify_password(password, user.password_hash):
        return user
    return None


def start_session(user):
    session.clear()
    session['logged_in'] = True
    session['user_id'] = user.id
    session['username'] = user.username
    session['user_role'] = user.role


def _wants_json():
    return request.path.startswith('/api/') or request.is_json


def _deny(message, status_code):
    if _wants_json():
        return jsonify({'error': message}), status_code
    flash(message, 'error')
    return redirect(url_for('login'))


def validate_session_user():
    """The session still belongs to an active user with a known role"""
    user_id = session.get('user_id')
    if user_id is None:
        return False
    user = db.session.get(User, user_id)
    return bool(user and user.is_active and user.role in ROLES)


# Authentication decorator, roles default to every staff role
def login_required(f=None, roles=ROLES):
    def decorator(view):
        @wraps(view)
        def decorated_function(*args, **kwargs):
            if 'logged_in' not in session:
                return _deny('Unauthorized', 401)

            if not validate_session_user():
                session.clear()
                return _deny('Unauthorized', 401)

            if session.get('user_role') not in roles:
                return _deny('Access denied', 403)

            return view(*args, **kwargs)
        return decorated_function

    if f is not None:
        return decorator(f)
    return decorator
