import io
from datetime import date

import pytest

from skilltrack.extensions import db
from skilltrack.models import Course, CourseSubject, CourseSupervisor, Task, User, UserCourse, UserSubject

from tests.conftest import flashed, login
from tests.factories import add_course_subject, create_course, create_subject, create_user, enroll


@pytest.fixture
def setup(app):
    with app.app_context():
        supervisor = create_user(role='supervisor')
        colleague = create_user(role='supervisor')
        outsider = create_user(role='supervisor')
        trainee = create_user(name='Alice Trainee')
        course = create_course(supervisor, name='Backend Bootcamp')
        enroll(trainee, course)
        return {
            'supervisor_id': supervisor.id,
            'colleague_id': colleague.id,
            'outsider_id': outsider.id,
            'trainee_id': trainee.id,
            'course_id': course.id,
        }


def _course_url(setup, suffix=''):
    return f"/supervisor/courses/{setup['course_id']}{suffix}"


def test_creator_becomes_the_first_supervisor(app, client, setup):
    login(client, setup['colleague_id'])

    response = client.post('/supervisor/courses/new', data={
        'name': 'Data Track', 'start_date': '2024-02-01', 'finish_date': '2024-05-01', 'status': 'not_started',
    })
    assert response.status_code == 302

    with app.app_context():
        course = Course.query.filter_by(name='Data Track').one()
        assert course.user_id == setup['colleague_id']
        assert [cs.user_id for cs in course.course_supervisors] == [setup['colleague_id']]


def test_course_dates_are_validated(app, client, setup):
    login(client, setup['supervisor_id'])

    response = client.post('/supervisor/courses/new', data={
        'name': 'Backwards', 'start_date': '2024-05-01', 'finish_date': '2024-02-01',
    })
    assert response.status_code == 422
    assert b'Finish date must be after start date' in response.data


def test_index_lists_only_supervised_courses(app, client, setup):
    with app.app_context():
        create_course(db.session.get(User, setup['outsider_id']),
                      name='Someone Else')
    login(client, setup['supervisor_id'])

    response = client.get('/supervisor/courses')
    assert b'Backend Bootcamp' in response.data
    assert b'Someone Else' not in response.data


def test_other_supervisors_cannot_open_the_course(client, setup):
    login(client, setup['outsider_id'])

    response = client.get(_course_url(setup))
    assert response.status_code == 302
    assert response.headers['Location'] == '/'
    assert ('danger', 'You do not have permission to access this page.') in flashed(client)


def test_adding_subjects_copies_tasks_and_appends(app, client, setup):
    with app.app_context():
        first_id = create_subject(name='Git', tasks=['Commit', 'Branch']).id
        second_id = create_subject(name='SQL', tasks=['Select']).id
    login(client, setup['supervisor_id'])

    client.post(_course_url(setup, '/add_subject'), data={'subject_id': first_id})
    client.post(_course_url(setup, '/add_subject'), data={'subject_id': second_id})

    with app.app_context():
        course_subjects = CourseSubject.query.filter_by(course_id=setup['course_id']).order_by(CourseSubject.position).all()
        assert [(cs.subject.name, cs.position) for cs in course_subjects] == [('Git', 1), ('SQL', 2)]
        assert [task.name for task in course_subjects[0].tasks] == ['Commit', 'Branch']
        assert course_subjects[0].status == 'not_started'


def test_adding_the_same_subject_twice_warns(app, client, setup):
    with app.app_context():
        subject_id = create_subject().id
    login(client, setup['supervisor_id'])

    client.post(_course_url(setup, '/add_subject'), data={'subject_id': subject_id})
    response = client.post(_course_url(setup, '/add_subject'), data={'subject_id': subject_id})
    assert response.headers['Location'] == _course_url(setup, '/subjects')
    assert ('warning', 'This subject is already part of the course.') in flashed(client)
    with app.app_context():
        assert CourseSubject.query.count() == 1


def test_last_supervisor_cannot_leave(app, client, setup):
    login(client, setup['supervisor_id'])

    response = client.post(_course_url(setup, '/leave'))
    assert response.headers['Location'] == _course_url(setup)
    assert ('warning', 'You are the only supervisor of this course and cannot leave it.') in flashed(client)
    with app.app_context():
        assert CourseSupervisor.query.filter_by(course_id=setup['course_id']).count() == 1


def test_supervisor_can_leave_when_someone_else_remains(app, client, setup):
    login(client, setup['supervisor_id'])
    client.post(_course_url(setup, '/course_supervisors'), data={'user_id': setup['colleague_id']})

    response = client.post(_course_url(setup, '/leave'))
    assert response.headers['Location'] == '/supervisor/courses'
    with app.app_context():
        remaining = CourseSupervisor.query.filter_by(course_id=setup['course_id']).all()
        assert [cs.user_id for cs in remaining] == [setup['colleague_id']]


def test_only_supervisors_can_be_added_as_supervisors(app, client, setup):
    login(client, setup['supervisor_id'])

    client.post(_course_url(setup, '/course_supervisors'), data={'user_id': setup['trainee_id']})
    assert ('danger', 'Only supervisors can supervise a course.') in flashed(client)
    with app.app_context():
        assert CourseSupervisor.query.filter_by(course_id=setup['course_id']).count() == 1


def test_removing_the_last_supervisor_is_refused(app, client, setup):
    with app.app_context():
        course_supervisor_id = CourseSupervisor.query.filter_by(course_id=setup['course_id']).one().id
    login(client, setup['supervisor_id'])

    client.post(_course_url(setup, f'/course_supervisors/{course_supervisor_id}/delete'))
    assert ('warning', 'A course must keep at least one supervisor.') in flashed(client)
    with app.app_context():
        assert db.session.get(CourseSupervisor, course_supervisor_id) is not None


def test_enrolling_trainees(app, client, setup):
    with app.app_context():
        newcomer_id = create_user().id
    login(client, setup['supervisor_id'])

    response = client.post(_course_url(setup, '/user_courses'), data={'user_id': newcomer_id})
    assert response.headers['Location'] == _course_url(setup, '/members')
    with app.app_context():
        user_course = UserCourse.query.filter_by(user_id=newcomer_id, course_id=setup['course_id']).one()
        assert user_course.status == 'not_started'

    client.post(_course_url(setup, '/user_courses'), data={'user_id': newcomer_id})
    assert any(category == 'warning' and 'already enrolled' in message for category, message in flashed(client))

    client.post(_course_url(setup, '/user_courses'), data={'user_id': setup['colleague_id']})
    assert ('danger', 'Only trainees can be enrolled in a course.') in flashed(client)
    with app.app_context():
        assert UserCourse.query.filter_by(course_id=setup['course_id']).count() == 2


def test_removing_a_member(app, client, setup):
    with app.app_context():
        user_course_id = UserCourse.query.filter_by(user_id=setup['trainee_id']).one().id
    login(client, setup['supervisor_id'])

    client.post(_course_url(setup, f'/user_courses/{user_course_id}/delete'))
    with app.app_context():
        assert db.session.get(UserCourse, user_course_id) is None


def test_member_search_excludes_enrolled_trainees(app, client, setup):
    with app.app_context():
        create_user(name='Alice Newcomer')
        create_user(name='Bob Builder')
        create_user(name='Alice Inactive', activated=False)
    login(client, setup['supervisor_id'])

    response = client.get(_course_url(setup, '/search_members?search=alice'))
    assert response.status_code == 200
    assert [row['name'] for row in response.get_json()] == ['Alice Newcomer']


def test_member_search_for_unknown_course(client, setup):
    login(client, setup['supervisor_id'])

    response = client.get('/supervisor/courses/999/search_members')
    assert response.status_code == 404
    assert response.get_json() == {'error': 'Course not found.'}


@pytest.fixture
def progress(app, setup):
    """The enrolled trainee's progress on a 50-point subject of the course."""
    with app.app_context():
        course = db.session.get(Course, setup['course_id'])
        course_subject = add_course_subject(course, create_subject(max_score=50, tasks=['Practice']))
        user_course = UserCourse.query.filter_by(user_id=setup['trainee_id']).one()
        user_subject = UserSubject(user_id=setup['trainee_id'], user_course_id=user_course.id,
                                   course_subject_id=course_subject.id, status='in_progress')
        db.session.add(user_subject)
        db.session.commit()
        return {'course_subject_id': course_subject.id, 'user_subject_id': user_subject.id}


def _details_url(setup, progress, suffix=''):
    return _course_url(setup, f"/subject_details/{progress['course_subject_id']}{suffix}")


def test_subject_details_page(client, setup, progress):
    login(client, setup['supervisor_id'])

    response = client.get(_details_url(setup, progress))
    assert response.status_code == 200
    assert b'Alice Trainee' in response.data
    assert b'Practice' in response.data


def test_scoring_respects_the_subject_maximum(app, client, setup, progress):
    login(client, setup['supervisor_id'])
    score_url = _details_url(setup, progress, f"/user_subjects/{progress['user_subject_id']}/score")

    client.post(score_url, data={'score': '45'})
    with app.app_context():
        assert db.session.get(UserSubject, progress['user_subject_id']).score == 45

    client.post(score_url, data={'score': '51'})
    assert ('danger', 'Score must be less than or equal to 50') in flashed(client)
    with app.app_context():
        assert db.session.get(UserSubject, progress['user_subject_id']).score == 45


def test_course_subject_task_management(app, client, setup, progress):
    login(client, setup['supervisor_id'])

    client.post(_details_url(setup, progress, '/tasks'), data={'name': 'Extra drill'})
    with app.app_context():
        task = Task.query.filter_by(name='Extra drill').one()
        assert task.taskable_type == 'CourseSubject'
        task_id = task.id

    client.post(_details_url(setup, progress, f'/tasks/{task_id}'), data={'name': 'Extra drills'})
    with app.app_context():
        assert db.session.get(Task, task_id).name == 'Extra drills'


def test_comments_can_only_be_changed_by_their_author(app, client, setup, progress):
    login(client, setup['supervisor_id'])
    client.post(_details_url(setup, progress, '/comments'), data={
        'commentable_type': 'UserSubject', 'commentable_id': progress['user_subject_id'], 'content': 'Nice work',
    })
    with app.app_context():
        comment_id = db.session.get(UserSubject, progress['user_subject_id']).comments[0].id
        course = db.session.get(Course, setup['course_id'])
        course.course_supervisors.append(CourseSupervisor(user_id=setup['colleague_id']))
        db.session.commit()

    login(client, setup['colleague_id'])
    client.post(_details_url(setup, progress, f'/comments/{comment_id}'), data={'content': 'Hijacked'})
    assert ('danger', 'You can only change your own comments.') in flashed(client)

    login(client, setup['supervisor_id'])
    client.post(_details_url(setup, progress, f'/comments/{comment_id}'), data={'content': 'Great work'})
    with app.app_context():
        assert db.session.get(UserSubject, progress['user_subject_id']).comments[0].content == 'Great work'

    client.post(_details_url(setup, progress, f'/comments/{comment_id}/delete'))
    with app.app_context():
        assert db.session.get(UserSubject, progress['user_subject_id']).comments == []


def test_finishing_a_course_subject(app, client, setup, progress):
    login(client, setup['supervisor_id'])
    finish_url = _course_url(setup, f"/course_subjects/{progress['course_subject_id']}/finish")

    client.post(finish_url)
    with app.app_context():
        course_subject = db.session.get(CourseSubject, progress['course_subject_id'])
        assert course_subject.status == 'finished'
        assert course_subject.finish_date == date.today()

    client.post(finish_url)
    assert ('info', 'This subject is already finished.') in flashed(client)


def test_removing_a_course_subject_soft_deletes_its_tasks(app, client, setup, progress):
    login(client, setup['supervisor_id'])

    client.post(_course_url(setup, f"/course_subjects/{progress['course_subject_id']}/delete"))
    with app.app_context():
        assert db.session.get(CourseSubject, progress['course_subject_id']) is None
        assert UserSubject.query.count() == 0
        copied = Task.query.with_deleted().for_taskable_type('CourseSubject').all()
        assert copied and all(task.is_deleted for task in copied)


def test_rejected_course_edit_shows_the_typed_values(app, client, setup):
    login(client, setup['supervisor_id'])

    response = client.post(_course_url(setup, '/edit'), data={
        'name': 'Renamed Bootcamp', 'start_date': '2024-05-01', 'finish_date': '2024-02-01', 'status': 'in_progress',
    })
    assert response.status_code == 422
    assert b'value="Renamed Bootcamp"' in response.data
    assert b'Finish date must be after start date' in response.data
    with app.app_context():
        assert db.session.get(Course, setup['course_id']).name == 'Backend Bootcamp'


def test_non_numeric_score_is_rejected(app, client, setup, progress):
    login(client, setup['supervisor_id'])
    score_url = _details_url(setup, progress, f"/user_subjects/{progress['user_subject_id']}/score")

    client.post(score_url, data={'score': 'lots'})
    assert ('danger', 'Score is not a number') in flashed(client)
    with app.app_context():
        assert db.session.get(UserSubject, progress['user_subject_id']).score is None


def test_deleted_subjects_are_hidden_from_the_course(app, client, setup, progress):
    with app.app_context():
        subject = db.session.get(CourseSubject, progress['course_subject_id']).subject
        subject.name = 'Ghost Subject'
        subject.soft_delete()
        db.session.commit()
    login(client, setup['supervisor_id'])

    for suffix in ('', '/subjects'):
        response = client.get(_course_url(setup, suffix))
        assert response.status_code == 200
        assert b'Ghost Subject' not in response.data

    response = client.get(_details_url(setup, progress))
    assert response.headers['Location'] == _course_url(setup)
    assert ('danger', 'Subject not found in this course.') in flashed(client)


def test_course_cover_image(app, client, setup):
    login(client, setup['supervisor_id'])

    response = client.post(_course_url(setup, '/edit'), data={
        'name': 'Backend Bootcamp', 'start_date': '2024-02-01', 'finish_date': '2024-05-01', 'status': 'in_progress',
        'image': (io.BytesIO(b'cover'), 'cover.webp'),
    }, content_type='multipart/form-data')
    assert response.headers['Location'] == _course_url(setup)
    with app.app_context():
        image = db.session.get(Course, setup['course_id']).image
    assert image.endswith('cover.webp')

    assert client.get(f"/courses/{setup['course_id']}/image").data == b'cover'
    assert b'/image"' in client.get(_course_url(setup)).data


def test_course_image_must_be_an_image(app, client, setup):
    login(client, setup['supervisor_id'])

    response = client.post('/supervisor/courses/new', data={
        'name': 'Data Track', 'start_date': '2024-02-01', 'finish_date': '2024-05-01', 'status': 'not_started',
        'image': (io.BytesIO(b'MZ'), 'setup.exe'),
    }, content_type='multipart/form-data')
    assert response.status_code == 422
    with app.app_context():
        assert Course.query.filter_by(name='Data Track').count() == 0
