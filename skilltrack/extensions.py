from authlib.integrations.flask_client import OAuth
from flask_login import LoginManager
from flask_mail import Mail
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
mail = Mail()
oauth = OAuth()

login_manager = LoginManager()
login_manager.login_view = 'auth.login'  # Redirect to login page if not authenticated
login_manager.login_message = 'Please log in to access this page.'
login_manager.login_message_category = 'info'

GOOGLE_METADATA_URL = 'https://accounts.google.com/.well-known/openid-configuration'


def register_oauth_clients(app):
    """Registers the Google client; its id and secret come from GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET."""
    oauth.init_app(app)
    oauth.register(
        'google',
        overwrite=True,
        server_metadata_url=GOOGLE_METADATA_URL,
        client_kwargs={'scope': 'openid email profile'},
    )
