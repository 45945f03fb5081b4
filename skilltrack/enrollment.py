"""
Progress records created when an enrolled trainee opens a subject.

The first visit to a course subject creates the trainee's UserSubject; every
visit fills in a UserTask for each task that does not have one yet (tasks
may be added to the course subject after the trainee started).
"""

from .extensions import db
from .models import UserCourse, UserSubject, UserTask


def find_user_course(user, course):
    return UserCourse.query.filter_by(user_id=user.id, course_id=course.id).first()


def find_or_create_user_subject(user, user_course, course_subject):
    user_subject = UserSubject.query.filter_by(user_id=user.id, course_subject_id=course_subject.id).first()
    if user_subject is None:
        user_subject = UserSubject(
            user_id=user.id,
            user_course_id=user_course.id,
            course_subject_id=course_subject.id,
            status='not_started',
        )
        db.session.add(user_subject)
        db.session.flush()
    return user_subject


def create_missing_user_tasks(user, user_subject, course_subject):
    existing_task_ids = {
        row[0] for row in db.session.query(UserTask.task_id).filter(UserTask.user_subject_id == user_subject.id)
    }
    created = []
    for task in course_subject.task_query():
        if task.id in existing_task_ids:
            continue
        user_task = UserTask(user_id=user.id, user_subject_id=user_subject.id, task_id=task.id, status='not_done')
        db.session.add(user_task)
        created.append(user_task)
    return created


def ensure_user_enrollments(user, course, course_subject):
    """
    Returns the trainee's UserSubject for ``course_subject``, creating it and
    any missing UserTasks first. Returns None (and writes nothing) when the
    trainee is not enrolled in ``course``.

    Commits on success; database errors propagate to the caller.
    """
    if course_subject is None:
        return None
    user_course = find_user_course(user, course)
    if user_course is None:
        return None
    user_subject = find_or_create_user_subject(user, user_course, course_subject)
    create_missing_user_tasks(user, user_subject, course_subject)
    db.session.commit()
    return user_subject
