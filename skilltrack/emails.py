from flask import current_app, render_template, url_for
from flask_mail import Message

from .extensions import mail
from .models import utcnow
from .tokens import CONFIRMATION_SALT, RESET_PASSWORD_SALT, generate_token


def send_confirmation_instructions(user):
    token = generate_token(user, CONFIRMATION_SALT)
    confirm_url = url_for('auth.confirm_email', token=token, _external=True)
    message = Message(
        subject='Confirm your SkillTrack account',
        recipients=[user.email],
        body=render_template('mail/confirmation_instructions.txt', user=user, confirm_url=confirm_url),
    )
    mail.send(message)
    user.confirmation_sent_at = utcnow()
    current_app.logger.info("Confirmation instructions sent to user %s", user.id)


def send_reset_password_instructions(user):
    token = generate_token(user, RESET_PASSWORD_SALT)
    reset_url = url_for('auth.reset_password', token=token, _external=True)
    message = Message(
        subject='Reset your SkillTrack password',
        recipients=[user.email],
        body=render_template('mail/reset_password_instructions.txt', user=user, reset_url=reset_url),
    )
    mail.send(message)
    current_app.logger.info("Password reset instructions sent to user %s", user.id)
