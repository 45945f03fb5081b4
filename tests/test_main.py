import io
import os

from skilltrack.extensions import db
from skilltrack.models import User

from tests.conftest import flashed, login
from tests.factories import create_subject, create_user


def test_visitors_see_the_landing_page(client):
    response = client.get('/')
    assert response.status_code == 200
    assert b'Welcome to SkillTrack' in response.data


def test_managers_are_sent_to_their_namespace(app, client):
    with app.app_context():
        supervisor_id = create_user(role='supervisor').id
        admin_id = create_user(role='admin').id

    login(client, supervisor_id)
    assert client.get('/').headers['Location'] == '/supervisor/courses'

    login(client, admin_id)
    assert client.get('/').headers['Location'].startswith('/admin')


def test_profile_can_only_be_edited_by_owner_or_admin(app, client):
    with app.app_context():
        owner_id = create_user(name='Owner').id
        stranger_id = create_user().id

    login(client, stranger_id)
    response = client.post(f'/users/{owner_id}/edit',
                           data={'name': 'Defaced', 'birthday': '1990-01-01', 'gender': 'male'})
    assert response.headers['Location'] == '/'
    assert ('danger', 'You are not authorized to perform this action.') in flashed(client)

    login(client, owner_id)
    response = client.post(f'/users/{owner_id}/edit',
                           data={'name': 'Owner Renamed', 'birthday': '1990-01-01', 'gender': 'male'})
    assert response.status_code == 303
    with app.app_context():
        assert User.query.filter_by(name='Owner Renamed').count() == 1


def test_unknown_profile_redirects_home(client):
    response = client.get('/users/999')
    assert response.headers['Location'] == '/'
    assert ('danger', 'User not found.') in flashed(client)


def test_subject_search_returns_live_subjects(app, client):
    with app.app_context():
        user_id = create_user(role='supervisor').id
        basics_id = create_subject(name='Flask Basics', max_score=40).id
        create_subject(name='Flask Advanced').soft_delete()
        db.session.commit()
    login(client, user_id)

    response = client.get('/subjects?search=flask')
    assert response.get_json() == [
        {'id': basics_id, 'name': 'Flask Basics', 'max_score': 40, 'estimated_time_days': 5},
    ]


def test_missing_document_is_a_404(app, client):
    with app.app_context():
        user_id = create_user().id
    login(client, user_id)

    assert client.get('/user_tasks/999/document').status_code == 404


def test_seed_command_creates_one_account_per_role(app):
    runner = app.test_cli_runner()

    result = runner.invoke(args=['seed-db'])
    assert result.exit_code == 0
    assert 'Initial admin user created' in result.output

    again = runner.invoke(args=['seed-db'])
    assert 'Admin user already exists' in again.output

    with app.app_context():
        assert sorted(user.role for user in User.query.all()) == ['admin', 'supervisor', 'trainee']
        assert all(user.confirmed for user in User.query.all())


PROFILE_FORM = {'name': 'Pictured User', 'birthday': '1990-01-01', 'gender': 'female'}


def _post_profile(client, user_id, filename, content=b'\x89PNG fake image'):
    return client.post(f'/users/{user_id}/edit', data=dict(PROFILE_FORM, image=(io.BytesIO(content), filename)),
                       content_type='multipart/form-data')


def test_profile_picture_upload_and_replacement(app, client):
    with app.app_context():
        user_id = create_user().id
    login(client, user_id)

    response = _post_profile(client, user_id, 'me.png', b'first picture')
    assert response.status_code == 303
    with app.app_context():
        first = db.session.get(User, user_id).image
    assert first.startswith(os.path.join('images', 'users', str(user_id)))

    picture = client.get(f'/users/{user_id}/image')
    assert picture.status_code == 200
    assert picture.data == b'first picture'

    _post_profile(client, user_id, 'me-again.jpg', b'second picture')
    with app.app_context():
        second = db.session.get(User, user_id).image
    assert second.endswith('me-again.jpg')
    assert not os.path.exists(os.path.join(app.config['UPLOAD_FOLDER'], first))
    assert client.get(f'/users/{user_id}/image').data == b'second picture'


def test_profile_picture_must_be_an_image(app, client):
    with app.app_context():
        user_id = create_user(name='Unchanged').id
    login(client, user_id)

    response = _post_profile(client, user_id, 'run.sh')
    assert response.status_code == 422
    assert ('danger', 'Image must be one of these file types: GIF, JPEG, JPG, PNG, WEBP') in flashed(client)
    with app.app_context():
        user = db.session.get(User, user_id)
        assert user.image is None
        assert user.name == 'Unchanged'


def test_missing_images_are_a_404(app, client):
    with app.app_context():
        user_id = create_user().id
    login(client, user_id)

    assert client.get(f'/users/{user_id}/image').status_code == 404
    assert client.get('/courses/999/image').status_code == 404


def test_rejected_profile_edit_shows_the_typed_values(app, client):
    with app.app_context():
        user_id = create_user(name='Stored Name').id
    login(client, user_id)

    response = client.post(f'/users/{user_id}/edit', data={'name': 'Typed Name', 'birthday': '', 'gender': 'male'})
    assert response.status_code == 422
    assert b'value="Typed Name"' in response.data
    with app.app_context():
        assert db.session.get(User, user_id).name == 'Stored Name'
