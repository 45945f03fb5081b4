from flask import Blueprint, current_app, flash, redirect, render_template, request, url_for
from flask_login import current_user, login_required

from ..constants import GENDERS, ROLES, USER_COURSE_STATUSES
from ..decorators import admin_required
from ..extensions import db
from ..forms import to_bool, to_date, to_id_list
from ..models import Course, DailyReport, Subject, User, UserCourse
from . import commit_or_rollback, flash_errors, paginate, password_errors

bp = Blueprint('admin', __name__, url_prefix='/admin')

RECENT_USERS_LIMIT = 5
MANAGED_ROLES = tuple(role for role in ROLES if role != 'admin')


@bp.route('/')
@bp.route('/dashboard')
@login_required
@admin_required
def dashboard():
    """Renders the admin dashboard with platform-wide counts."""
    stats = {
        'trainees': User.query.filter_by(role='trainee').count(),
        'supervisors': User.query.filter_by(role='supervisor').count(),
        'admins': User.query.filter_by(role='admin').count(),
        'courses': Course.query.count(),
        'subjects': Subject.query.not_deleted().count(),
        'daily_reports': DailyReport.query.submitted().count(),
    }
    recent_users = User.query.recent().limit(RECENT_USERS_LIMIT).all()
    return render_template('admin/dashboard.html', title='Admin Dashboard', stats=stats, recent_users=recent_users)


# --- Users (trainees and supervisors) ---

def _load_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        flash('User not found.', 'danger')
    return user


@bp.route('/users')
@login_required
@admin_required
def users():
    role = request.args.get('role')
    status = request.args.get('status')
    search = request.args.get('search', '').strip()
    query = User.query.filter(User.role != 'admin')
    if role in MANAGED_ROLES:
        query = query.filter(User.role == role)
    query = query.filter_by_status(to_bool(status)).filter_by_name(search).sort_by_name()
    pagination = paginate(query)
    return render_template('admin/users/index.html', title='Manage Users', pagination=pagination,
                           users=pagination.items, roles=MANAGED_ROLES, selected_role=role,
                           selected_status=status, search=search)


@bp.route('/users/<int:user_id>')
@login_required
@admin_required
def show_user(user_id):
    user = _load_user(user_id)
    if user is None:
        return redirect(url_for('admin.users'))
    if user.is_admin:
        return redirect(url_for('admin.show_admin_user', user_id=user.id))
    return render_template('admin/users/show.html', title=user.name, user=user, user_courses=user.user_courses,
                           genders=GENDERS, user_course_statuses=USER_COURSE_STATUSES)


@bp.route('/users/<int:user_id>', methods=['POST'])
@login_required
@admin_required
def update_user(user_id):
    user = _load_user(user_id)
    if user is None:
        return redirect(url_for('admin.users'))

    user.name = (request.form.get('name') or '').strip()
    user.birthday = to_date(request.form.get('birthday'))
    user.gender = request.form.get('gender')
    errors = user.validate()
    if errors:
        db.session.rollback()
        flash_errors(errors)
    else:
        commit_or_rollback('User updated successfully.', 'Could not update the user.', 'Admin user update error')
    return redirect(url_for('admin.show_user', user_id=user.id))


@bp.route('/users/<int:user_id>/status', methods=['POST'])
@login_required
@admin_required
def update_user_status(user_id):
    """Toggles whether the user may sign in."""
    user = _load_user(user_id)
    if user is None:
        return redirect(url_for('admin.users'))
    if user.id == current_user.id:
        flash('You cannot change your own status.', 'danger')
        return redirect(url_for('admin.users'))

    user.activated = not user.activated
    state = 'activated' if user.activated else 'deactivated'
    commit_or_rollback(f'{user.name} has been {state}.', 'Could not change the user status.',
                       'Admin status toggle error')
    return redirect(url_for('admin.users'))


@bp.route('/users/<int:user_id>/user_courses/<int:user_course_id>/delete', methods=['POST'])
@login_required
@admin_required
def delete_user_course(user_id, user_course_id):
    user_course = db.session.get(UserCourse, user_course_id)
    if user_course is None or user_course.user_id != user_id:
        flash('Enrollment not found.', 'danger')
        return redirect(url_for('admin.users'))
    db.session.delete(user_course)
    commit_or_rollback('User removed from the course.', 'Could not remove the user from the course.',
                       'Admin user course deletion error')
    return redirect(url_for('admin.show_user', user_id=user_id))


@bp.route('/users/bulk_deactivate', methods=['POST'])
@login_required
@admin_required
def bulk_deactivate():
    """Deactivates the selected users; admins and the current user are left untouched."""
    user_ids = [uid for uid in to_id_list(request.form.getlist('user_ids')) if uid != current_user.id]
    if not user_ids:
        flash('Please select at least one user.', 'warning')
        return redirect(url_for('admin.users'))

    targets = User.query.filter(User.id.in_(user_ids), User.role != 'admin').all()
    for user in targets:
        user.activated = False
    commit_or_rollback(f'{len(targets)} user(s) deactivated.', 'Could not deactivate the selected users.',
                       'Admin bulk deactivation error')
    return redirect(url_for('admin.users'))


@bp.route('/users/new_supervisor')
@login_required
@admin_required
def new_supervisor():
    """Lists trainees that can be promoted to supervisor."""
    search = request.args.get('search', '').strip()
    pagination = paginate(User.query.filter_by(role='trainee').filter_by_name(search).sort_by_name())
    return render_template('admin/users/new_supervisor.html', title='Add Supervisor', pagination=pagination,
                           trainees=pagination.items, search=search)


@bp.route('/users/add_role_supervisor', methods=['POST'])
@login_required
@admin_required
def add_role_supervisor():
    user = db.session.get(User, request.form.get('user_id', type=int) or 0)
    if user is None or not user.is_trainee:
        flash('Only trainees can be promoted to supervisor.', 'danger')
        return redirect(url_for('admin.new_supervisor'))

    user.role = 'supervisor'
    if commit_or_rollback(f'{user.name} is now a supervisor.', 'Could not promote the user.',
                          'Supervisor promotion error'):
        current_app.logger.info("User %s promoted to supervisor by admin %s", user.id, current_user.id)
    return redirect(url_for('admin.users', role='supervisor'))


# --- Admin users ---

def _load_admin(user_id):
    user = db.session.get(User, user_id)
    if user is None or not user.is_admin:
        flash('Admin user not found.', 'danger')
        return None
    return user


@bp.route('/admin_users')
@login_required
@admin_required
def admin_users():
    pagination = paginate(User.query.filter_by(role='admin').sort_by_name())
    return render_template('admin/admin_users/index.html', title='Administrators', pagination=pagination,
                           admins=pagination.items)


@bp.route('/admin_users/new', methods=['GET', 'POST'])
@login_required
@admin_required
def new_admin_user():
    """Creates an administrator account that can sign in right away."""
    if request.method == 'POST':
        form = request.form
        user = User(
            name=(form.get('name') or '').strip(),
            email=(form.get('email') or '').strip().lower(),
            role='admin',
            activated=True,
        )
        errors = user.validate(require_profile=False)
        errors.update(password_errors(form.get('password'), form.get('password_confirmation')))
        if errors:
            flash_errors(errors)
            return render_template('admin/admin_users/new.html', title='New Administrator', form=form), 422

        user.set_password(form.get('password'))
        user.confirm()
        db.session.add(user)
        if commit_or_rollback('Administrator created successfully.', 'Could not create the administrator.',
                              'Admin creation error'):
            current_app.logger.info("Admin %s created by admin %s", user.id, current_user.id)
            return redirect(url_for('admin.admin_users'))
        return render_template('admin/admin_users/new.html', title='New Administrator', form=form), 422

    return render_template('admin/admin_users/new.html', title='New Administrator', form={})


@bp.route('/admin_users/<int:user_id>')
@login_required
@admin_required
def show_admin_user(user_id):
    user = _load_admin(user_id)
    if user is None:
        return redirect(url_for('admin.admin_users'))
    return render_template('admin/admin_users/show.html', title=user.name, admin=user)


@bp.route('/admin_users/<int:user_id>/delete', methods=['POST'])
@login_required
@admin_required
def delete_admin_user(user_id):
    user = _load_admin(user_id)
    if user is None:
        return redirect(url_for('admin.admin_users'))
    if user.id == current_user.id:
        flash('You cannot delete your own account.', 'danger')
        return redirect(url_for('admin.admin_users'))

    name = user.name
    db.session.delete(user)
    commit_or_rollback(f'Administrator {name} deleted.', 'Could not delete the administrator.',
                       'Admin deletion error')
    return redirect(url_for('admin.admin_users'))


def _set_admin_activation(user_id, activated):
    user = _load_admin(user_id)
    if user is None:
        return redirect(url_for('admin.admin_users'))
    if user.id == current_user.id:
        flash('You cannot change your own status.', 'danger')
        return redirect(url_for('admin.admin_users'))

    user.activated = activated
    state = 'activated' if activated else 'deactivated'
    commit_or_rollback(f'Administrator {user.name} {state}.', 'Could not change the administrator status.',
                       'Admin activation error')
    return redirect(url_for('admin.admin_users'))


@bp.route('/admin_users/<int:user_id>/activate', methods=['POST'])
@login_required
@admin_required
def activate_admin_user(user_id):
    return _set_admin_activation(user_id, True)


@bp.route('/admin_users/<int:user_id>/deactivate', methods=['POST'])
@login_required
@admin_required
def deactivate_admin_user(user_id):
    return _set_admin_activation(user_id, False)


@bp.route('/admin_users/promote', methods=['POST'])
@login_required
@admin_required
def promote_admin_user():
    """Grants the admin role to an existing account, found by email."""
    email = (request.form.get('email') or '').strip().lower()
    user = User.query.filter_by(email=email).first() if email else None
    if user is None:
        flash('No user with that email address.', 'danger')
        return redirect(url_for('admin.admin_users'))
    if user.is_admin:
        flash(f'{user.name} is already an administrator.', 'info')
        return redirect(url_for('admin.admin_users'))

    user.role = 'admin'
    if commit_or_rollback(f'{user.name} is now an administrator.', 'Could not promote the user.',
                          'Admin promotion error'):
        current_app.logger.info("User %s promoted to admin by admin %s", user.id, current_user.id)
    return redirect(url_for('admin.admin_users'))


# --- Daily reports ---

@bp.route('/daily_reports')
@login_required
@admin_required
def daily_reports():
    course_id = request.args.get('course_id', type=int)
    user_id = request.args.get('user_id', type=int)
    day = to_date(request.args.get('date'))
    pagination = paginate(
        DailyReport.query.submitted().by_course(course_id).by_user(user_id).on_date(day).recent()
    )
    return render_template('admin/daily_reports/index.html', title='Daily Reports', pagination=pagination,
                           reports=pagination.items, courses=Course.query.order_by(Course.name.asc()).all(),
                           trainees=User.query.filter_by(role='trainee').sort_by_name().all(),
                           selected_course_id=course_id, selected_user_id=user_id, selected_date=day)


@bp.route('/daily_reports/<int:report_id>')
@login_required
@admin_required
def show_daily_report(report_id):
    report = db.session.get(DailyReport, report_id)
    if report is None or not report.is_submitted:
        flash('Daily report not found.', 'danger')
        return redirect(url_for('admin.daily_reports'))
    return render_template('admin/daily_reports/show.html', title='Daily Report', report=report)
