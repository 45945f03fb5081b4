import os

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _normalize_db_url(url):
    # Some hosts still hand out the pre-SQLAlchemy-1.4 scheme
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]
    return url


class Config:
    """Application settings read from the environment."""

    SECRET_KEY = os.environ.get('SECRET_KEY', 'a_very_secret_key_for_dev')  # Use environment variable for production
    SQLALCHEMY_DATABASE_URI = _normalize_db_url(
        os.environ.get('DATABASE_URL', 'sqlite:///' + os.path.join(BASE_DIR, 'skilltrack.db'))
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get('SKILLTRACK_LOG_LEVEL', 'INFO').upper()
    LOG_SQL = os.environ.get('SKILLTRACK_DEBUG_SQL', '0') == '1'

    ITEMS_PER_PAGE = int(os.environ.get('ITEMS_PER_PAGE', '10'))

    UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER', os.path.join(BASE_DIR, 'uploads'))
    MAX_DOCUMENT_SIZE_MB = int(os.environ.get('MAX_DOCUMENT_SIZE_MB', '5'))
    MAX_CONTENT_LENGTH = MAX_DOCUMENT_SIZE_MB * 1024 * 1024

    # Token lifetimes, in seconds
    CONFIRMATION_MAX_AGE = int(os.environ.get('CONFIRMATION_MAX_AGE', str(3 * 24 * 3600)))
    RESET_PASSWORD_MAX_AGE = int(os.environ.get('RESET_PASSWORD_MAX_AGE', str(6 * 3600)))

    MAIL_SERVER = os.environ.get('MAIL_SERVER', 'localhost')
    MAIL_PORT = int(os.environ.get('MAIL_PORT', '25'))
    MAIL_USE_TLS = os.environ.get('MAIL_USE_TLS', '0') == '1'
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER', 'no-reply@skilltrack.local')

    # Google sign-in is offered only when both are set
    GOOGLE_CLIENT_ID = os.environ.get('GOOGLE_CLIENT_ID')
    GOOGLE_CLIENT_SECRET = os.environ.get('GOOGLE_CLIENT_SECRET')

    # Seed accounts for `flask seed-db`
    SEED_ADMIN_EMAIL = os.environ.get('SEED_ADMIN_EMAIL', 'admin@skilltrack.local')
    SEED_ADMIN_PASSWORD = os.environ.get('SEED_ADMIN_PASSWORD', 'adminpass')
