"""Signed, expiring tokens for email confirmation and password reset."""

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

CONFIRMATION_SALT = 'email-confirmation'
RESET_PASSWORD_SALT = 'reset-password'


def _serializer():
    return URLSafeTimedSerializer(current_app.config['SECRET_KEY'])


def generate_token(user, salt):
    # The password hash fragment invalidates reset links once the password changes
    return _serializer().dumps({'id': user.id, 'h': user.password_hash[-12:]}, salt=salt)


def load_token(token, salt, max_age):
    """Returns the token payload, or None when it is invalid or expired."""
    try:
        return _serializer().loads(token, salt=salt, max_age=max_age)
    except SignatureExpired:
        current_app.logger.info("Expired %s token presented", salt)
        return None
    except BadSignature:
        return None
