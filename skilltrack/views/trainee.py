import os

from flask import Blueprint, current_app, flash, redirect, render_template, request, url_for
from flask_login import current_user, login_required
from sqlalchemy.exc import SQLAlchemyError

from ..constants import ALLOWED_DOCUMENT_EXTENSIONS, USER_TASK_STATUSES
from ..decorators import authorize, trainee_required
from ..enrollment import ensure_user_enrollments, find_user_course
from ..extensions import db
from ..forms import to_date, to_number
from ..models import Comment, Course, CourseSubject, DailyReport, UserCourse, UserSubject, UserTask
from ..uploads import allowed_file, chosen_file, remove_upload, replace_upload
from . import flash_errors, paginate, render_invalid, safe_redirect_target

bp = Blueprint('trainee', __name__, url_prefix='/trainee')

COMMENTABLE_MODELS = {'UserCourse': UserCourse, 'UserSubject': UserSubject}


def _subject_page(user_task):
    course_subject = user_task.user_subject.course_subject
    return url_for('trainee.show_subject', course_id=course_subject.course_id, subject_id=course_subject.subject_id)


def _load_user_task(user_task_id):
    user_task = db.session.get(UserTask, user_task_id)
    if user_task is None:
        flash('Task not found.', 'danger')
        return None
    authorize('update', user_task)
    return user_task


# --- Courses ---

@bp.route('/courses/<int:course_id>')
@login_required
@trainee_required
def show_course(course_id):
    course = db.session.get(Course, course_id)
    if course is None:
        flash('Course not found.', 'danger')
        return redirect(url_for('main.index'))
    authorize('read', course)

    user_course = find_user_course(current_user, course)
    progress = {}
    if user_course is not None:
        progress = {user_subject.course_subject_id: user_subject for user_subject in user_course.user_subjects}
    return render_template('trainee/course.html', title=course.name, course=course, user_course=user_course,
                           course_subjects=course.active_course_subjects, progress=progress)


@bp.route('/courses/<int:course_id>/members')
@login_required
@trainee_required
def course_members(course_id):
    course = db.session.get(Course, course_id)
    if course is None:
        flash('Course not found.', 'danger')
        return redirect(url_for('main.index'))
    authorize('members', course)
    return render_template('trainee/members.html', title=f'Members of {course.name}', course=course,
                           trainees=course.users, supervisors=course.supervisors)


@bp.route('/courses/<int:course_id>/subjects')
@login_required
@trainee_required
def course_subjects(course_id):
    course = db.session.get(Course, course_id)
    if course is None:
        flash('Course not found.', 'danger')
        return redirect(url_for('main.index'))
    authorize('subjects', course)

    user_course = find_user_course(current_user, course)
    progress = {}
    if user_course is not None:
        progress = {user_subject.course_subject_id: user_subject for user_subject in user_course.user_subjects}
    return render_template('trainee/subjects.html', title=f'Subjects of {course.name}', course=course,
                           course_subjects=course.active_course_subjects, progress=progress)


@bp.route('/courses/<int:course_id>/subjects/<int:subject_id>')
@login_required
@trainee_required
def show_subject(course_id, subject_id):
    """
    Shows a subject of a course. Opening it as an enrolled trainee creates
    the UserSubject and any missing UserTasks.
    """
    course = db.session.get(Course, course_id)
    if course is None:
        flash('Course not found.', 'danger')
        return redirect(url_for('trainee.show_course', course_id=course_id))

    course_subject = CourseSubject.query.filter_by(course_id=course.id, subject_id=subject_id).first()
    subject = course_subject.subject if course_subject else None
    if subject is None or subject.is_deleted:
        flash('Subject not found in this course.', 'danger')
        return redirect(url_for('trainee.show_course', course_id=course.id))
    authorize('show', subject)

    try:
        user_subject = ensure_user_enrollments(current_user, course, course_subject)
    except SQLAlchemyError as e:
        db.session.rollback()
        flash('Could not start this subject.', 'danger')
        current_app.logger.error(f"Subject enrollment error for user {current_user.id}: {e}")
        return redirect(url_for('trainee.show_course', course_id=course.id))

    tasks = course_subject.task_query().all()
    user_tasks = {}
    comments = []
    if user_subject is not None:
        user_tasks = {user_task.task_id: user_task for user_task in user_subject.user_tasks}
        comments = user_subject.comments
    return render_template('trainee/subject.html', title=subject.name, course=course, subject=subject,
                           course_subject=course_subject, user_subject=user_subject, tasks=tasks,
                           user_tasks=user_tasks, comments=comments, task_statuses=USER_TASK_STATUSES)


# --- Progress ---

@bp.route('/user_subjects/<int:user_subject_id>', methods=['POST'])
@login_required
@trainee_required
def update_user_subject(user_subject_id):
    """Starts or finishes a subject ('start' / 'finish' in the ``event`` field)."""
    user_subject = db.session.get(UserSubject, user_subject_id)
    if user_subject is None:
        flash('Subject progress not found.', 'danger')
        return redirect(url_for('main.index'))
    authorize('update', user_subject)

    course_subject = user_subject.course_subject
    target = url_for('trainee.show_subject', course_id=course_subject.course_id, subject_id=course_subject.subject_id)
    event = request.form.get('event')
    if event == 'start':
        if user_subject.status != 'not_started':
            flash('This subject has already been started.', 'info')
            return redirect(target)
        user_subject.start()
    elif event == 'finish':
        if user_subject.status == 'finished':
            flash('This subject is already finished.', 'info')
            return redirect(target)
        user_subject.finish()
    else:
        flash('Unknown action.', 'danger')
        return redirect(target)

    # Any subject activity opens the enrollment
    user_course = user_subject.user_course
    if user_course.status == 'not_started':
        user_course.status = 'in_progress'

    try:
        db.session.commit()
        flash('Subject status updated.', 'success')
    except SQLAlchemyError as e:
        db.session.rollback()
        flash('Could not update the subject status.', 'danger')
        current_app.logger.error(f"User subject update error: {e}")
    return redirect(target)


@bp.route('/user_tasks/<int:user_task_id>/document', methods=['POST'])
@login_required
@trainee_required
def update_document(user_task_id):
    user_task = _load_user_task(user_task_id)
    if user_task is None:
        return redirect(url_for('main.index'))

    upload = chosen_file('document')
    if upload is None:
        flash('Please choose a file to upload.', 'danger')
        return redirect(_subject_page(user_task))
    if not allowed_file(upload.filename, ALLOWED_DOCUMENT_EXTENSIONS):
        flash('This file type is not allowed.', 'danger')
        return redirect(_subject_page(user_task))

    relative_dir = os.path.join('user_tasks', str(user_task.id))
    if replace_upload(user_task, 'document', upload, relative_dir, 'Document upload error'):
        flash('Document uploaded.', 'success')
    else:
        flash('Could not save the document.', 'danger')
    return redirect(_subject_page(user_task))


@bp.route('/user_tasks/<int:user_task_id>/document/delete', methods=['POST'])
@login_required
@trainee_required
def destroy_document(user_task_id):
    user_task = _load_user_task(user_task_id)
    if user_task is None:
        return redirect(url_for('main.index'))
    if not user_task.document:
        flash('There is no document to remove.', 'info')
        return redirect(_subject_page(user_task))

    previous = user_task.document
    user_task.document = None
    try:
        db.session.commit()
        remove_upload(previous)
        flash('Document removed.', 'success')
    except SQLAlchemyError as e:
        db.session.rollback()
        flash('Could not remove the document.', 'danger')
        current_app.logger.error(f"Document removal error: {e}")
    return redirect(_subject_page(user_task))


@bp.route('/user_tasks/<int:user_task_id>/status', methods=['POST'])
@login_required
@trainee_required
def update_status(user_task_id):
    user_task = _load_user_task(user_task_id)
    if user_task is None:
        return redirect(url_for('main.index'))

    status = request.form.get('status')
    if status not in USER_TASK_STATUSES:
        flash('Invalid task status.', 'danger')
        return redirect(_subject_page(user_task))

    user_task.status = status
    try:
        db.session.commit()
        flash('Task status updated.', 'success')
    except SQLAlchemyError as e:
        db.session.rollback()
        flash('Could not update the task status.', 'danger')
        current_app.logger.error(f"Task status update error: {e}")
    return redirect(_subject_page(user_task))


@bp.route('/user_tasks/<int:user_task_id>/spent_time', methods=['POST'])
@login_required
@trainee_required
def update_spent_time(user_task_id):
    user_task = _load_user_task(user_task_id)
    if user_task is None:
        return redirect(url_for('main.index'))

    user_task.spent_time = to_number(request.form.get('spent_time'))
    errors = user_task.validate()
    if errors:
        db.session.rollback()
        flash_errors(errors)
        return redirect(_subject_page(user_task))
    try:
        db.session.commit()
        flash('Spent time updated.', 'success')
    except SQLAlchemyError as e:
        db.session.rollback()
        flash('Could not update the spent time.', 'danger')
        current_app.logger.error(f"Spent time update error: {e}")
    return redirect(_subject_page(user_task))


# --- Comments ---

@bp.route('/comments', methods=['POST'])
@login_required
@trainee_required
def create_comment():
    model = COMMENTABLE_MODELS.get(request.form.get('commentable_type'))
    commentable = db.session.get(model, request.form.get('commentable_id', type=int) or 0) if model else None
    back = safe_redirect_target(request.form.get('next')) or url_for('main.index')
    if commentable is None:
        flash('Nothing to comment on.', 'danger')
        return redirect(back)

    comment = Comment(user_id=current_user.id, content=(request.form.get('content') or '').strip())
    comment.commentable = commentable
    authorize('create', comment)
    errors = comment.validate()
    if errors:
        flash_errors(errors)
        return redirect(back)
    try:
        db.session.add(comment)
        db.session.commit()
        flash('Comment posted.', 'success')
    except SQLAlchemyError as e:
        db.session.rollback()
        flash('Could not post the comment.', 'danger')
        current_app.logger.error(f"Comment creation error: {e}")
    return redirect(back)


# --- Daily reports ---

def _joined_courses():
    return Course.query.joined_by(current_user.id).order_by(Course.name.asc()).all()


def _load_report(report_id, action):
    report = db.session.get(DailyReport, report_id)
    if report is None:
        flash('Daily report not found.', 'danger')
        return None
    authorize(action, report)
    return report


@bp.route('/daily_reports')
@login_required
@trainee_required
def daily_reports():
    course_id = request.args.get('course_id', type=int)
    day = to_date(request.args.get('date'))
    pagination = paginate(
        DailyReport.query.by_user(current_user.id).by_course(course_id).on_date(day).recent()
    )
    return render_template('trainee/daily_reports/index.html', title='My Daily Reports', pagination=pagination,
                           reports=pagination.items, courses=_joined_courses(), selected_course_id=course_id,
                           selected_date=day)


@bp.route('/daily_reports/<int:report_id>')
@login_required
@trainee_required
def show_daily_report(report_id):
    report = _load_report(report_id, 'read')
    if report is None:
        return redirect(url_for('trainee.daily_reports'))
    return render_template('trainee/daily_reports/show.html', title='Daily Report', report=report)


def _apply_report_form(report):
    report.course_id = request.form.get('course_id', type=int)
    report.content = (request.form.get('content') or '').strip()
    errors = report.validate()
    if report.course_id and report.course_id not in current_user.course_ids:
        errors.setdefault('course', []).append('must be one of your courses')
    return errors


@bp.route('/daily_reports/new', methods=['GET', 'POST'])
@login_required
@trainee_required
def new_daily_report():
    """Creates a draft, or submits it right away when the ``submit`` button is used."""
    report = DailyReport(user_id=current_user.id, status='draft')
    authorize('create', report)

    if request.method == 'POST':
        errors = _apply_report_form(report)
        if errors:
            flash_errors(errors)
            return render_template('trainee/daily_reports/form.html', title='New Daily Report', report=report,
                                   courses=_joined_courses()), 422
        if request.form.get('submit'):
            report.submit()
        try:
            db.session.add(report)
            db.session.commit()
            flash('Daily report submitted.' if report.is_submitted else 'Daily report saved as draft.', 'success')
            return redirect(url_for('trainee.show_daily_report', report_id=report.id))
        except SQLAlchemyError as e:
            db.session.rollback()
            flash('Could not save the daily report.', 'danger')
            current_app.logger.error(f"Daily report creation error: {e}")

    return render_template('trainee/daily_reports/form.html', title='New Daily Report', report=report,
                           courses=_joined_courses())


@bp.route('/daily_reports/<int:report_id>/edit', methods=['GET', 'POST'])
@login_required
@trainee_required
def edit_daily_report(report_id):
    report = _load_report(report_id, 'update')
    if report is None:
        return redirect(url_for('trainee.daily_reports'))
    if report.is_submitted:
        flash('Submitted reports can no longer be changed.', 'warning')
        return redirect(url_for('trainee.show_daily_report', report_id=report.id))

    if request.method == 'POST':
        errors = _apply_report_form(report)
        if errors:
            flash_errors(errors)
            return render_invalid(lambda: render_template('trainee/daily_reports/form.html', title='Edit Daily Report',
                                                          report=report, courses=_joined_courses()))
        if request.form.get('submit'):
            report.submit()
        try:
            db.session.commit()
            flash('Daily report updated.', 'success')
            return redirect(url_for('trainee.show_daily_report', report_id=report.id))
        except SQLAlchemyError as e:
            db.session.rollback()
            flash('Could not update the daily report.', 'danger')
            current_app.logger.error(f"Daily report update error: {e}")

    return render_template('trainee/daily_reports/form.html', title='Edit Daily Report', report=report,
                           courses=_joined_courses())


@bp.route('/daily_reports/<int:report_id>/delete', methods=['POST'])
@login_required
@trainee_required
def delete_daily_report(report_id):
    report = _load_report(report_id, 'destroy')
    if report is None:
        return redirect(url_for('trainee.daily_reports'))
    try:
        db.session.delete(report)
        db.session.commit()
        flash('Daily report deleted.', 'success')
    except SQLAlchemyError as e:
        db.session.rollback()
        flash('Could not delete the daily report.', 'danger')
        current_app.logger.error(f"Daily report deletion error: {e}")
    return redirect(url_for('trainee.daily_reports'))
