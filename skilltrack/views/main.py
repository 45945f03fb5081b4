import os

from flask import (
    Blueprint,
    abort,
    current_app,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    send_from_directory,
    url_for,
)
from flask_login import current_user, login_required

from ..constants import COURSE_STATUSES, GENDERS
from ..decorators import authorize
from ..extensions import db
from ..forms import to_date
from ..models import Course, Subject, User, UserTask
from ..uploads import chosen_file, commit_with_image, image_errors
from . import flash_errors, paginate, render_invalid

bp = Blueprint('main', __name__)

SUBJECT_SEARCH_LIMIT = 20


def _load_user_or_redirect(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        flash('User not found.', 'danger')
    return user


@bp.route('/')
def index():
    """
    Renders the homepage: the landing page for visitors, the course list for
    trainees; managers are sent to their own namespace.
    """
    if not current_user.is_authenticated:
        return render_template('index.html', title='Welcome to SkillTrack')
    if current_user.is_admin:
        return redirect(url_for('admin.dashboard'))
    if current_user.is_supervisor:
        return redirect(url_for('supervisor.courses'))

    status = request.args.get('status')
    pagination = paginate(
        Course.query.joined_by(current_user.id).by_status(status).ordered_by_start_date()
    )
    return render_template('home.html', title='My Courses', pagination=pagination, courses=pagination.items,
                           statuses=COURSE_STATUSES, selected_status=status)


@bp.route('/users/<int:user_id>')
def show_user(user_id):
    """Public profile page."""
    user = _load_user_or_redirect(user_id)
    if user is None:
        return redirect(url_for('main.index'))
    return render_template('users/show.html', title=user.name, user=user)


@bp.route('/users/<int:user_id>/edit', methods=['GET', 'POST'])
@login_required
def edit_user(user_id):
    """Profile edit, open to the user themself and to admins."""
    user = _load_user_or_redirect(user_id)
    if user is None:
        return redirect(url_for('main.index'))
    if not (current_user.is_admin or current_user.id == user.id):
        flash('You are not authorized to perform this action.', 'danger')
        return redirect(url_for('main.index'))

    if request.method == 'POST':
        user.name = (request.form.get('name') or '').strip()
        user.birthday = to_date(request.form.get('birthday'))
        user.gender = request.form.get('gender')
        upload = chosen_file('image')
        errors = user.validate()
        errors.update(image_errors(upload))
        if errors:
            flash('Profile update failed.', 'danger')
            flash_errors(errors)
            return render_invalid(lambda: render_template('users/edit.html', title='Edit profile', user=user,
                                                          genders=GENDERS))
        if commit_with_image(user, upload, 'Profile update error'):
            flash('Profile updated.', 'success')
            return redirect(url_for('main.show_user', user_id=user.id), code=303)
        flash('Profile update failed.', 'danger')

    return render_template('users/edit.html', title='Edit profile', user=user, genders=GENDERS)


@bp.route('/subjects')
@login_required
def search_subjects():
    """JSON subject search used by the course and task pickers."""
    search = request.args.get('search', '').strip()
    subjects = Subject.query.not_deleted().search_by_name(search).ordered_by_name().limit(SUBJECT_SEARCH_LIMIT).all()
    return jsonify([
        {
            'id': subject.id,
            'name': subject.name,
            'max_score': subject.max_score,
            'estimated_time_days': subject.estimated_time_days,
        }
        for subject in subjects
    ])


@bp.route('/user_tasks/<int:user_task_id>/document')
@login_required
def download_document(user_task_id):
    user_task = db.session.get(UserTask, user_task_id)
    if user_task is None or not user_task.document:
        abort(404)
    authorize('read', user_task)
    directory, filename = os.path.split(os.path.join(current_app.config['UPLOAD_FOLDER'], user_task.document))
    return send_from_directory(directory, filename, as_attachment=True)


def _send_image(owner):
    if owner is None or not owner.image:
        abort(404)
    directory, filename = os.path.split(os.path.join(current_app.config['UPLOAD_FOLDER'], owner.image))
    return send_from_directory(directory, filename)


@bp.route('/users/<int:user_id>/image')
def user_image(user_id):
    """Profile pictures are as public as the profile page."""
    return _send_image(db.session.get(User, user_id))


@bp.route('/courses/<int:course_id>/image')
@login_required
def course_image(course_id):
    return _send_image(db.session.get(Course, course_id))
