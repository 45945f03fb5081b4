import io
import os

import pytest
from sqlalchemy.exc import OperationalError

from skilltrack.extensions import db
from skilltrack.models import Comment, CourseSubject, Subject, UserCourse, UserSubject, UserTask

from tests.conftest import flashed, login
from tests.factories import add_course_subject, create_course, create_subject, create_user, enroll


@pytest.fixture
def setup(app):
    with app.app_context():
        supervisor = create_user(role='supervisor')
        trainee = create_user()
        outsider = create_user()
        course = create_course(supervisor)
        enroll(trainee, course)
        subject = create_subject(tasks=['Read the guide', 'Write the exercise'])
        course_subject = add_course_subject(course, subject)
        return {
            'trainee_id': trainee.id,
            'outsider_id': outsider.id,
            'course_id': course.id,
            'subject_id': subject.id,
            'course_subject_id': course_subject.id,
        }


def _subject_url(setup):
    return f"/trainee/courses/{setup['course_id']}/subjects/{setup['subject_id']}"


def _user_subject(setup):
    return UserSubject.query.filter_by(user_id=setup['trainee_id'],
                                       course_subject_id=setup['course_subject_id']).one()


def test_opening_a_subject_enrolls_the_trainee(app, client, setup):
    login(client, setup['trainee_id'])

    response = client.get(_subject_url(setup))
    assert response.status_code == 200
    assert b'Read the guide' in response.data

    with app.app_context():
        user_subject = _user_subject(setup)
        assert user_subject.status == 'not_started'
        assert sorted(user_task.status for user_task in user_subject.user_tasks) == ['not_done', 'not_done']


def test_revisiting_picks_up_new_tasks_without_duplicates(app, client, setup):
    login(client, setup['trainee_id'])
    client.get(_subject_url(setup))

    with app.app_context():
        db.session.get(CourseSubject, setup['course_subject_id']).add_task('Bonus task')
        db.session.commit()

    client.get(_subject_url(setup))
    client.get(_subject_url(setup))

    with app.app_context():
        assert UserSubject.query.count() == 1
        assert UserTask.query.count() == 3


def test_non_member_is_turned_away(app, client, setup):
    login(client, setup['outsider_id'])

    response = client.get(_subject_url(setup))
    assert response.status_code == 302
    assert response.headers['Location'] == '/'
    assert ('danger', 'You do not have permission to access this page.') in flashed(client)
    with app.app_context():
        assert UserSubject.query.count() == 0


def test_unknown_course_redirects_with_message(client, setup):
    login(client, setup['trainee_id'])

    response = client.get(f"/trainee/courses/999/subjects/{setup['subject_id']}")
    assert response.status_code == 302
    assert response.headers['Location'] == '/trainee/courses/999'
    assert ('danger', 'Course not found.') in flashed(client)


def test_subject_outside_the_course_redirects_with_message(app, client, setup):
    with app.app_context():
        stray_id = create_subject().id
    login(client, setup['trainee_id'])

    response = client.get(f"/trainee/courses/{setup['course_id']}/subjects/{stray_id}")
    assert response.status_code == 302
    assert response.headers['Location'] == f"/trainee/courses/{setup['course_id']}"
    assert ('danger', 'Subject not found in this course.') in flashed(client)


def test_starting_a_subject_also_starts_the_course(app, client, setup):
    login(client, setup['trainee_id'])
    client.get(_subject_url(setup))
    with app.app_context():
        user_subject_id = _user_subject(setup).id

    response = client.post(f'/trainee/user_subjects/{user_subject_id}', data={'event': 'start'})
    assert response.status_code == 302

    with app.app_context():
        user_subject = db.session.get(UserSubject, user_subject_id)
        assert user_subject.status == 'in_progress'
        assert user_subject.started_at is not None
        assert user_subject.user_course.status == 'in_progress'

    client.post(f'/trainee/user_subjects/{user_subject_id}', data={'event': 'finish'})
    with app.app_context():
        user_subject = db.session.get(UserSubject, user_subject_id)
        assert user_subject.status == 'finished'
        assert user_subject.completed_at is not None


def test_task_status_and_spent_time_updates(app, client, setup):
    login(client, setup['trainee_id'])
    client.get(_subject_url(setup))
    with app.app_context():
        user_task_id = UserTask.query.first().id

    client.post(f'/trainee/user_tasks/{user_task_id}/status', data={'status': 'done'})
    client.post(f'/trainee/user_tasks/{user_task_id}/spent_time', data={'spent_time': '1.5'})
    with app.app_context():
        user_task = db.session.get(UserTask, user_task_id)
        assert user_task.status == 'done'
        assert user_task.spent_time == 1.5

    client.post(f'/trainee/user_tasks/{user_task_id}/spent_time', data={'spent_time': '-2'})
    assert ('danger', 'Spent time must be greater than or equal to 0') in flashed(client)
    with app.app_context():
        assert db.session.get(UserTask, user_task_id).spent_time == 1.5


def test_other_trainees_cannot_touch_a_task(app, client, setup):
    login(client, setup['trainee_id'])
    client.get(_subject_url(setup))
    with app.app_context():
        user_task_id = UserTask.query.first().id
        other_id = create_user().id

    login(client, other_id)
    response = client.post(f'/trainee/user_tasks/{user_task_id}/status', data={'status': 'done'})
    assert response.headers['Location'] == '/'
    with app.app_context():
        assert db.session.get(UserTask, user_task_id).status == 'not_done'


def test_document_upload_and_removal(app, client, setup):
    login(client, setup['trainee_id'])
    client.get(_subject_url(setup))
    with app.app_context():
        user_task_id = UserTask.query.first().id

    response = client.post(
        f'/trainee/user_tasks/{user_task_id}/document',
        data={'document': (io.BytesIO(b'my notes'), 'notes.txt')},
        content_type='multipart/form-data',
    )
    assert response.status_code == 302
    with app.app_context():
        document = db.session.get(UserTask, user_task_id).document
    assert document.endswith('notes.txt')
    path = os.path.join(app.config['UPLOAD_FOLDER'], document)
    assert os.path.exists(path)

    download = client.get(f'/user_tasks/{user_task_id}/document')
    assert download.status_code == 200
    assert download.data == b'my notes'

    client.post(f'/trainee/user_tasks/{user_task_id}/document/delete')
    assert not os.path.exists(path)
    with app.app_context():
        assert db.session.get(UserTask, user_task_id).document is None


def test_disallowed_document_type_is_rejected(app, client, setup):
    login(client, setup['trainee_id'])
    client.get(_subject_url(setup))
    with app.app_context():
        user_task_id = UserTask.query.first().id

    client.post(
        f'/trainee/user_tasks/{user_task_id}/document',
        data={'document': (io.BytesIO(b'#!/bin/sh'), 'run.sh')},
        content_type='multipart/form-data',
    )
    assert ('danger', 'This file type is not allowed.') in flashed(client)
    with app.app_context():
        assert db.session.get(UserTask, user_task_id).document is None


def test_trainee_comments_on_own_enrollment(app, client, setup):
    login(client, setup['trainee_id'])
    with app.app_context():
        user_course_id = UserCourse.query.filter_by(user_id=setup['trainee_id']).one().id

    response = client.post('/trainee/comments', data={
        'commentable_type': 'UserCourse',
        'commentable_id': user_course_id,
        'content': 'When is the next review?',
        'next': f"/trainee/courses/{setup['course_id']}",
    })
    assert response.headers['Location'] == f"/trainee/courses/{setup['course_id']}"
    with app.app_context():
        comment = Comment.query.one()
        assert comment.commentable_id == user_course_id
        assert comment.user_id == setup['trainee_id']


def test_course_pages_render_for_members(client, setup):
    login(client, setup['trainee_id'])
    for path in ('', '/subjects', '/members'):
        response = client.get(f"/trainee/courses/{setup['course_id']}{path}")
        assert response.status_code == 200


def test_enrollment_failure_redirects_to_the_course(app, client, setup, monkeypatch):
    def broken_enrollment(*args):
        raise OperationalError('INSERT INTO user_subject', {}, Exception('database is locked'))

    monkeypatch.setattr('skilltrack.views.trainee.ensure_user_enrollments', broken_enrollment)
    login(client, setup['trainee_id'])

    response = client.get(_subject_url(setup))
    assert response.status_code == 302
    assert response.headers['Location'] == f"/trainee/courses/{setup['course_id']}"
    assert ('danger', 'Could not start this subject.') in flashed(client)
    with app.app_context():
        assert UserSubject.query.count() == 0


def test_finishing_a_subject_straight_away_starts_the_course(app, client, setup):
    login(client, setup['trainee_id'])
    client.get(_subject_url(setup))
    with app.app_context():
        user_subject_id = _user_subject(setup).id

    client.post(f'/trainee/user_subjects/{user_subject_id}', data={'event': 'finish'})
    with app.app_context():
        user_subject = db.session.get(UserSubject, user_subject_id)
        assert user_subject.status == 'finished'
        assert user_subject.user_course.status == 'in_progress'


def test_deleted_subjects_drop_off_the_course_pages(app, client, setup):
    with app.app_context():
        course = db.session.get(CourseSubject, setup['course_subject_id']).course
        add_course_subject(course, create_subject(name='Ghost Subject'))
        ghost = Subject.query.filter_by(name='Ghost Subject').one()
        ghost.soft_delete()
        db.session.commit()
        ghost_id = ghost.id
    login(client, setup['trainee_id'])

    for path in ('', '/subjects'):
        response = client.get(f"/trainee/courses/{setup['course_id']}{path}")
        assert response.status_code == 200
        assert b'Ghost Subject' not in response.data

    response = client.get(f"/trainee/courses/{setup['course_id']}/subjects/{ghost_id}")
    assert response.headers['Location'] == f"/trainee/courses/{setup['course_id']}"


def test_failed_document_replacement_keeps_the_old_file(app, client, setup, monkeypatch):
    login(client, setup['trainee_id'])
    client.get(_subject_url(setup))
    with app.app_context():
        user_task_id = UserTask.query.first().id

    client.post(
        f'/trainee/user_tasks/{user_task_id}/document',
        data={'document': (io.BytesIO(b'first draft'), 'a.txt')},
        content_type='multipart/form-data',
    )
    with app.app_context():
        old_document = db.session.get(UserTask, user_task_id).document
    old_path = os.path.join(app.config['UPLOAD_FOLDER'], old_document)

    def failing_commit():
        raise OperationalError('UPDATE user_task', {}, Exception('disk I/O error'))

    monkeypatch.setattr(db.session, 'commit', failing_commit)
    client.post(
        f'/trainee/user_tasks/{user_task_id}/document',
        data={'document': (io.BytesIO(b'second draft'), 'b.txt')},
        content_type='multipart/form-data',
    )
    monkeypatch.undo()

    assert ('danger', 'Could not save the document.') in flashed(client)
    assert os.path.exists(old_path)
    with app.app_context():
        assert db.session.get(UserTask, user_task_id).document == old_document
    stored = os.listdir(os.path.dirname(old_path))
    assert stored == [os.path.basename(old_path)]


def test_replacing_a_document_removes_the_old_file(app, client, setup):
    login(client, setup['trainee_id'])
    client.get(_subject_url(setup))
    with app.app_context():
        user_task_id = UserTask.query.first().id

    for name in ('a.txt', 'b.txt'):
        client.post(
            f'/trainee/user_tasks/{user_task_id}/document',
            data={'document': (io.BytesIO(b'draft'), name)},
            content_type='multipart/form-data',
        )
    with app.app_context():
        document = db.session.get(UserTask, user_task_id).document
    assert document.endswith('b.txt')
    folder = os.path.join(app.config['UPLOAD_FOLDER'], os.path.dirname(document))
    assert os.listdir(folder) == [os.path.basename(document)]
