"""SkillTrack: a role-based learning-management web application."""

import os
from datetime import date, datetime

import click
from flask import Flask, flash, redirect, request, session, url_for
from flask_login import current_user
from sqlalchemy import inspect

from .ability import AccessDenied
from .config import Config
from .decorators import PERMISSION_DENIED_MESSAGE, current_ability
from .extensions import db, login_manager, mail, register_oauth_clients
from .logging_config import configure_logging
from .models import User

# JSON and file endpoints are never a page to come back to after signing in
UNTRACKED_ENDPOINTS = frozenset({
    'static',
    'main.search_subjects',
    'main.download_document',
    'main.user_image',
    'main.course_image',
    'supervisor.search_members',
})


def create_app(config_override=None):
    """Builds the Flask application; ``config_override`` wins over the environment."""
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_override:
        app.config.update(config_override)
    configure_logging(app)

    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    db.init_app(app)
    login_manager.init_app(app)
    mail.init_app(app)
    register_oauth_clients(app)

    from .views.admin import bp as admin_bp
    from .views.auth import bp as auth_bp
    from .views.main import bp as main_bp
    from .views.supervisor import bp as supervisor_bp
    from .views.trainee import bp as trainee_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(trainee_bp)
    app.register_blueprint(supervisor_bp)
    app.register_blueprint(admin_bp)

    _register_hooks(app)
    _register_commands(app)
    return app


# --- Flask-Login User Loader ---

@login_manager.user_loader
def load_user(user_id):
    """
    Loads a user from the database given their user ID.
    Required by Flask-Login.
    """
    return db.session.get(User, int(user_id))


def _register_hooks(app):
    @app.errorhandler(AccessDenied)
    def handle_access_denied(exc):
        app.logger.info("Access denied: %s on %r for user %s", exc.action, exc.subject,
                        current_user.get_id() if current_user.is_authenticated else None)
        flash(PERMISSION_DENIED_MESSAGE, 'danger')
        return redirect(url_for('main.index'))

    @app.before_request
    def store_user_location():
        # Remember the last page so sign-in can send the user back to it
        if request.method != 'GET' or request.is_json:
            return
        if request.headers.get('X-Requested-With') == 'XMLHttpRequest':
            return
        if request.blueprint == 'auth' or request.endpoint is None or request.endpoint in UNTRACKED_ENDPOINTS:
            return
        session['forwarding_url'] = request.full_path.rstrip('?')

    @app.context_processor
    def inject_template_globals():
        """Injects the current year and the permission table into all templates."""
        return dict(current_year=datetime.now().year, ability=current_ability(), today=date.today())


# --- Database Initialization and Seeding ---

def _register_commands(app):
    @app.cli.command('init-db')
    def init_db_command():
        """Creates the database tables."""
        inspector = inspect(db.engine)
        if inspector.has_table('user'):
            click.echo("Database tables already exist. Creating any missing tables...")
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command('seed-db')
    def seed_db_command():
        """Seeds the database with an admin, a supervisor and a trainee when missing."""
        db.create_all()
        seeds = [
            ('admin', 'Admin', app.config['SEED_ADMIN_EMAIL'], app.config['SEED_ADMIN_PASSWORD']),
            ('supervisor', 'Supervisor', 'supervisor@skilltrack.local', 'supervisorpass'),
            ('trainee', 'Trainee', 'trainee@skilltrack.local', 'traineepass'),
        ]
        for role, name, email, password in seeds:
            if User.query.filter_by(role=role).first():
                click.echo(f"{role.capitalize()} user already exists. Skipping {role} seeding.")
                continue
            user = User(name=name, email=email, role=role, gender='other', birthday=date(1990, 1, 1), activated=True)
            user.set_password(password)
            user.confirm()
            db.session.add(user)
            db.session.commit()
            click.echo(f"Initial {role} user created: {email}")
