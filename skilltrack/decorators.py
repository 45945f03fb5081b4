from functools import wraps

from flask import flash, g, redirect, url_for
from flask_login import current_user

from .ability import Ability

PERMISSION_DENIED_MESSAGE = 'You do not have permission to access this page.'


def current_ability():
    """Returns the Ability of the signed-in user, built once per request."""
    if '_ability' not in g:
        user = current_user._get_current_object() if current_user.is_authenticated else None
        g._ability = Ability(user)
    return g._ability


# --- Role-based Access Control Decorators ---
def namespace_required(namespace):
    """
    Custom decorator to restrict a route to users allowed to access the given
    namespace ('trainee', 'supervisor' or 'admin').
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated or current_ability().cannot('access', namespace):
                flash(PERMISSION_DENIED_MESSAGE, 'danger')
                return redirect(url_for('main.index'))
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def admin_required(f):
    """Decorator to restrict access to admin users only."""
    return namespace_required('admin')(f)


def supervisor_required(f):
    """Decorator to restrict access to supervisors (and admins)."""
    return namespace_required('supervisor')(f)


def trainee_required(f):
    """Decorator to restrict access to trainees (and admins)."""
    return namespace_required('trainee')(f)


def authorize(action, subject):
    """Raises AccessDenied unless the current user may perform ``action`` on ``subject``."""
    return current_ability().authorize(action, subject)
