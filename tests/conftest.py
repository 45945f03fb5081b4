import pytest

from skilltrack import create_app
from skilltrack.extensions import db


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret-key',
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'MAIL_SUPPRESS_SEND': True,
        'MAIL_DEFAULT_SENDER': 'no-reply@skilltrack.test',
        'ITEMS_PER_PAGE': 10,
    })
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, user_id):
    """Signs the test client in as the given user without going through the form."""
    with client.session_transaction() as sess:
        sess['_user_id'] = str(user_id)
        sess['_fresh'] = True


def flashed(client):
    """Messages flashed so far and not yet rendered, as (category, message) pairs."""
    with client.session_transaction() as sess:
        return list(sess.get('_flashes', []))
