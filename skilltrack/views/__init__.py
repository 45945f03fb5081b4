"""Blueprints, one per namespace, and the small helpers they share."""

from flask import current_app, flash, request
from sqlalchemy.exc import SQLAlchemyError

from ..constants import USER_MIN_PASSWORD_LENGTH
from ..extensions import db
from ..models import ValidationMixin


def paginate(query):
    """Paginates a query with the configured page size and the ``page`` query argument."""
    page = request.args.get('page', 1, type=int)
    return query.paginate(page=page, per_page=current_app.config['ITEMS_PER_PAGE'], error_out=False)


def flash_errors(errors, category='danger'):
    for message in ValidationMixin.full_messages(errors):
        flash(message, category)


def commit_or_rollback(success_message, failure_message, log_label):
    """Commits the session; on failure rolls back, flashes and logs. Returns True on success."""
    try:
        db.session.commit()
        flash(success_message, 'success')
        return True
    except SQLAlchemyError as e:
        db.session.rollback()
        flash(failure_message, 'danger')
        current_app.logger.error(f"{log_label}: {e}")
        return False


def password_errors(password, confirmation):
    errors = {}
    if not password:
        errors['password'] = ["can't be blank"]
    elif len(password) < USER_MIN_PASSWORD_LENGTH:
        errors['password'] = [f'is too short (minimum is {USER_MIN_PASSWORD_LENGTH} characters)']
    elif password != confirmation:
        errors['password_confirmation'] = ["doesn't match Password"]
    return errors


def safe_redirect_target(target):
    """Only same-site relative paths are followed after a redirect."""
    if target and target.startswith('/') and not target.startswith('//'):
        return target
    return None


def render_invalid(render):
    """
    Re-renders a rejected form with the values the user typed, then discards
    them. ``render`` is called with autoflush off so the invalid values never
    reach the database.
    """
    with db.session.no_autoflush:
        body = render()
    db.session.rollback()
    return body, 422
