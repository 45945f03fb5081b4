import smtplib

from authlib.integrations.base_client import OAuthError
from flask import Blueprint, current_app, flash, redirect, render_template, request, session, url_for
from flask_login import current_user, login_required, login_user, logout_user
from sqlalchemy.exc import SQLAlchemyError

from ..constants import GENDERS, GOOGLE_PROVIDER
from ..emails import send_confirmation_instructions, send_reset_password_instructions
from ..extensions import db, oauth
from ..forms import to_date
from ..models import User
from ..tokens import CONFIRMATION_SALT, RESET_PASSWORD_SALT, load_token
from . import flash_errors, password_errors, render_invalid, safe_redirect_target

bp = Blueprint('auth', __name__, url_prefix='/users')


def _after_sign_in_path():
    stored = safe_redirect_target(request.args.get('next')) or session.pop('forwarding_url', None)
    if not stored or stored.startswith(url_for('auth.login')):
        return url_for('main.index')
    return stored


def _deliver(send, user):
    """Sends a mail, reporting delivery problems to the user instead of failing the request."""
    try:
        send(user)
        return True
    except (OSError, smtplib.SMTPException) as e:
        current_app.logger.error(f"Mail delivery error for user {user.id}: {e}")
        flash('We could not send you an email right now. Please try again later.', 'warning')
        return False


@bp.route('/sign_in', methods=['GET', 'POST'])
def login():
    """Handles user login."""
    if current_user.is_authenticated:
        flash('You are already logged in.', 'info')
        return redirect(url_for('main.index'))

    if request.method == 'POST':
        email = (request.form.get('email') or '').strip().lower()
        password = request.form.get('password') or ''
        user = User.query.filter_by(email=email).first() if email else None

        if user and user.check_password(password):
            if not user.confirmed:
                flash('You have to confirm your email address before continuing.', 'warning')
            elif not user.is_active:
                flash('Your account has been deactivated. Please contact an administrator.', 'danger')
            else:
                login_user(user, remember=bool(request.form.get('remember_me')))
                flash('Logged in successfully!', 'success')
                return redirect(_after_sign_in_path())
        else:
            flash('Invalid email or password.', 'danger')
        return render_template('auth/login.html', title='Log in', email=email), 422

    return render_template('auth/login.html', title='Log in')


@bp.route('/sign_out')
@login_required
def logout():
    """Handles user logout."""
    logout_user()
    session.pop('forwarding_url', None)
    flash('You have been logged out.', 'info')
    return redirect(url_for('main.index'))


# --- Google sign-in ---

def _google_configured():
    return bool(current_app.config.get('GOOGLE_CLIENT_ID') and current_app.config.get('GOOGLE_CLIENT_SECRET'))


@bp.route('/auth/google')
def google_login():
    if not _google_configured():
        flash('Google sign-in is not available.', 'warning')
        return redirect(url_for('auth.login'))
    return oauth.google.authorize_redirect(url_for('auth.google_callback', _external=True))


def _user_from_google(info):
    """
    Finds the account linked to the Google identity, links an existing account
    with the same verified address, or creates a confirmed trainee.
    Returns ``(user, errors)``.
    """
    user = User.query.filter_by(provider=GOOGLE_PROVIDER, uid=info['sub']).first()
    if user is not None:
        return user, {}

    email = info['email'].strip().lower()
    user = User.query.filter_by(email=email).first()
    if user is not None:
        if not info.get('email_verified'):
            return None, {'email': ['has already been taken']}
        user.provider, user.uid = GOOGLE_PROVIDER, info['sub']
        if not user.confirmed:
            user.confirm()
        return user, {}

    user = User.from_oauth(GOOGLE_PROVIDER, info['sub'], email, info.get('name'))
    errors = user.validate(require_profile=False)
    if errors:
        return None, errors
    db.session.add(user)
    return user, {}


@bp.route('/auth/google/callback')
def google_callback():
    try:
        token = oauth.google.authorize_access_token()
    except OAuthError as e:
        current_app.logger.warning(f"Google sign-in error: {e}")
        flash('Could not authenticate you from Google.', 'danger')
        return redirect(url_for('auth.login'))

    info = token.get('userinfo') or {}
    if not info.get('sub') or not info.get('email'):
        flash('Could not authenticate you from Google.', 'danger')
        return redirect(url_for('auth.login'))

    user, errors = _user_from_google(info)
    if errors:
        db.session.rollback()
        flash_errors(errors)
        return redirect(url_for('auth.login'))
    if not user.is_active:
        db.session.rollback()
        flash('Your account has been deactivated. Please contact an administrator.', 'danger')
        return redirect(url_for('auth.login'))
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        flash('Could not authenticate you from Google.', 'danger')
        current_app.logger.error(f"Google account error: {e}")
        return redirect(url_for('auth.login'))

    login_user(user)
    flash('Successfully authenticated from Google account.', 'success')
    return redirect(_after_sign_in_path())


@bp.route('/sign_up', methods=['GET', 'POST'])
def register():
    """Creates a trainee account and mails the confirmation link."""
    if current_user.is_authenticated:
        flash('You are already logged in.', 'info')
        return redirect(url_for('main.index'))

    if request.method == 'POST':
        form = request.form
        user = User(
            name=(form.get('name') or '').strip(),
            email=(form.get('email') or '').strip().lower(),
            birthday=to_date(form.get('birthday')),
            gender=form.get('gender'),
            role='trainee',
            activated=True,
        )
        errors = user.validate()
        errors.update(password_errors(form.get('password'), form.get('password_confirmation')))
        if errors:
            flash_errors(errors)
            return render_template('auth/register.html', title='Sign up', form=form, genders=GENDERS), 422

        user.set_password(form.get('password'))
        try:
            db.session.add(user)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            flash('An error occurred during registration. Please try again.', 'danger')
            current_app.logger.error(f"Registration error: {e}")
            return render_template('auth/register.html', title='Sign up', form=form, genders=GENDERS), 422

        current_app.logger.info("New trainee registered: %s", user.id)
        if _deliver(send_confirmation_instructions, user):
            db.session.commit()
        flash('A message with a confirmation link has been sent to your email address. '
              'Please follow the link to activate your account.', 'success')
        return redirect(url_for('auth.login'))

    return render_template('auth/register.html', title='Sign up', form={}, genders=GENDERS)


@bp.route('/confirmation/<token>')
def confirm_email(token):
    payload = load_token(token, CONFIRMATION_SALT, current_app.config['CONFIRMATION_MAX_AGE'])
    user = db.session.get(User, payload['id']) if payload else None
    if user is None:
        flash('The confirmation link is invalid or has expired.', 'danger')
        return redirect(url_for('auth.resend_confirmation'))

    if user.confirmed:
        flash('Your email address has already been confirmed. Please log in.', 'info')
        return redirect(url_for('auth.login'))

    user.confirm()
    try:
        db.session.commit()
        flash('Your email address has been successfully confirmed.', 'success')
    except SQLAlchemyError as e:
        db.session.rollback()
        flash('An error occurred while confirming your account.', 'danger')
        current_app.logger.error(f"Confirmation error: {e}")
    return redirect(url_for('auth.login'))


@bp.route('/confirmation/new', methods=['GET', 'POST'])
def resend_confirmation():
    if request.method == 'POST':
        email = (request.form.get('email') or '').strip().lower()
        user = User.query.filter_by(email=email).first() if email else None
        if user is not None and not user.confirmed:
            if _deliver(send_confirmation_instructions, user):
                db.session.commit()
        # Same answer whether or not the address is known
        flash('If your email address exists in our database and is unconfirmed, '
              'you will receive a confirmation link in a few minutes.', 'info')
        return redirect(url_for('auth.login'))

    return render_template('auth/resend_confirmation.html', title='Resend confirmation instructions')


@bp.route('/password/new', methods=['GET', 'POST'])
def forgot_password():
    if current_user.is_authenticated:
        return redirect(url_for('main.index'))

    if request.method == 'POST':
        email = (request.form.get('email') or '').strip().lower()
        user = User.query.filter_by(email=email).first() if email else None
        if user is not None:
            _deliver(send_reset_password_instructions, user)
        flash('If your email address exists in our database, you will receive a password recovery link '
              'in a few minutes.', 'info')
        return redirect(url_for('auth.login'))

    return render_template('auth/forgot_password.html', title='Forgot your password?')


@bp.route('/password/edit/<token>', methods=['GET', 'POST'])
def reset_password(token):
    payload = load_token(token, RESET_PASSWORD_SALT, current_app.config['RESET_PASSWORD_MAX_AGE'])
    user = db.session.get(User, payload['id']) if payload else None
    if user is None or user.password_hash[-12:] != payload.get('h'):
        flash('The password reset link is invalid or has expired.', 'danger')
        return redirect(url_for('auth.forgot_password'))

    if request.method == 'POST':
        errors = password_errors(request.form.get('password'), request.form.get('password_confirmation'))
        if errors:
            flash_errors(errors)
            return render_template('auth/reset_password.html', title='Change your password', token=token), 422

        user.set_password(request.form.get('password'))
        if not user.confirmed:
            # Following a mailed link proves ownership of the address
            user.confirm()
        try:
            db.session.commit()
            flash('Your password has been changed successfully. You can now log in.', 'success')
            return redirect(url_for('auth.login'))
        except SQLAlchemyError as e:
            db.session.rollback()
            flash('An error occurred while resetting the password.', 'danger')
            current_app.logger.error(f"Password reset error: {e}")

    return render_template('auth/reset_password.html', title='Change your password', token=token)


@bp.route('/edit', methods=['GET', 'POST'])
@login_required
def edit_account():
    """Lets the signed-in user change profile fields and, with the current password, the password."""
    user = current_user._get_current_object()
    if request.method == 'POST':
        form = request.form
        user.name = (form.get('name') or '').strip()
        user.birthday = to_date(form.get('birthday'))
        user.gender = form.get('gender')
        errors = user.validate()

        new_password = form.get('password')
        if new_password:
            if not user.check_password(form.get('current_password') or ''):
                errors['current_password'] = ['is invalid']
            else:
                errors.update(password_errors(new_password, form.get('password_confirmation')))

        if errors:
            flash_errors(errors)
            return render_invalid(lambda: render_template('auth/edit_account.html', title='Edit account', user=user,
                                                          genders=GENDERS))

        if new_password:
            user.set_password(new_password)
        try:
            db.session.commit()
            if new_password:
                # Keep the session alive after the password change
                login_user(user)
            flash('Your account has been updated successfully.', 'success')
            return redirect(url_for('auth.edit_account'))
        except SQLAlchemyError as e:
            db.session.rollback()
            flash('An error occurred while updating your account.', 'danger')
            current_app.logger.error(f"Account update error: {e}")

    return render_template('auth/edit_account.html', title='Edit account', user=user, genders=GENDERS)
