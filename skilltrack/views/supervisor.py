from flask import Blueprint, current_app, flash, jsonify, redirect, render_template, request, url_for
from flask_login import current_user, login_required
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

from ..constants import COURSE_STATUSES, GENDERS, TASK_MAX_NAME_LENGTH, USER_COURSE_STATUSES
from ..decorators import authorize, current_ability, supervisor_required
from ..extensions import db
from ..forms import nested_rows, to_bool, to_date, to_id_list, to_number
from ..models import (
    Category,
    Comment,
    Course,
    CourseSubject,
    CourseSupervisor,
    DailyReport,
    Subject,
    SubjectCategory,
    Task,
    User,
    UserCourse,
    UserSubject,
)
from ..uploads import chosen_file, commit_with_image, image_errors
from . import commit_or_rollback, flash_errors, paginate, render_invalid, safe_redirect_target

bp = Blueprint('supervisor', __name__, url_prefix='/supervisor')

MEMBER_SEARCH_LIMIT = 20
COMMENTABLE_MODELS = {'UserCourse': UserCourse, 'UserSubject': UserSubject}


def _supervised_courses():
    return Course.query.supervised_by(current_user.id).order_by(Course.name.asc()).all()


# --- Daily reports ---

@bp.route('/daily_reports')
@login_required
@supervisor_required
def daily_reports():
    """Submitted reports written in the courses the supervisor runs."""
    course_id = request.args.get('course_id', type=int)
    user_id = request.args.get('user_id', type=int)
    day = to_date(request.args.get('date'))
    supervised_ids = current_user.supervised_course_ids
    query = (DailyReport.query.submitted()
             .filter(DailyReport.course_id.in_(supervised_ids))
             .by_course(course_id).by_user(user_id).on_date(day).recent())
    pagination = paginate(query)
    trainees = User.query.supervised_by(current_user.id).sort_by_name().all()
    return render_template('supervisor/daily_reports/index.html', title='Daily Reports', pagination=pagination,
                           reports=pagination.items, courses=_supervised_courses(), trainees=trainees,
                           selected_course_id=course_id, selected_user_id=user_id, selected_date=day)


@bp.route('/daily_reports/<int:report_id>')
@login_required
@supervisor_required
def show_daily_report(report_id):
    report = db.session.get(DailyReport, report_id)
    if report is None or not report.is_submitted:
        flash('Daily report not found.', 'danger')
        return redirect(url_for('supervisor.daily_reports'))
    authorize('read', report)
    return render_template('supervisor/daily_reports/show.html', title='Daily Report', report=report)


# --- Subjects ---

def _load_subject(subject_id):
    subject = db.session.get(Subject, subject_id)
    if subject is None or subject.is_deleted:
        flash('Subject not found.', 'danger')
        return None
    return subject


def _apply_subject_form(subject):
    form = request.form
    subject.name = (form.get('name') or '').strip()
    subject.description = (form.get('description') or '').strip() or None
    subject.max_score = to_number(form.get('max_score'))
    subject.estimated_time_days = to_number(form.get('estimated_time_days'))
    return subject.validate()


def _task_row_errors(rows):
    errors = {}
    for row in rows:
        if to_bool(row.get('_destroy')):
            continue
        name = (row.get('name') or '').strip()
        if not name:
            if (row.get('description') or '').strip() or row.get('id'):
                errors.setdefault('tasks', []).append("name can't be blank")
        elif len(name) > TASK_MAX_NAME_LENGTH:
            errors.setdefault('tasks', []).append(f'name is too long (maximum is {TASK_MAX_NAME_LENGTH} characters)')
    return errors


def _sync_categories(subject, category_ids):
    wanted = set(category_ids)
    for subject_category in list(subject.subject_categories):
        if subject_category.category_id not in wanted:
            subject.subject_categories.remove(subject_category)
        else:
            wanted.discard(subject_category.category_id)
    for category in Category.query.filter(Category.id.in_(wanted)).all():
        subject.subject_categories.append(SubjectCategory(category=category))


def _apply_task_rows(subject, rows):
    """Creates, updates and soft deletes the subject's tasks from nested form rows."""
    existing = {task.id: task for task in subject.task_query()}
    for row in rows:
        task_id = to_number(row.get('id'))
        name = (row.get('name') or '').strip()
        description = (row.get('description') or '').strip() or None
        if task_id:
            task = existing.get(task_id)
            if task is None:
                continue
            if to_bool(row.get('_destroy')):
                task.soft_delete()
            else:
                task.name = name
                task.description = description
        elif name and not to_bool(row.get('_destroy')):
            subject.add_task(name, description)


def _render_subject_form(subject, title, rows):
    return render_template('supervisor/subjects/form.html', title=title, subject=subject, task_rows=rows,
                           categories=Category.query.order_by(Category.name.asc()).all(),
                           selected_category_ids=to_id_list(request.form.getlist('category_ids'))
                           if request.method == 'POST' else [c.id for c in subject.categories])


@bp.route('/subjects')
@login_required
@supervisor_required
def subjects():
    search = request.args.get('search', '').strip()
    pagination = paginate(Subject.query.not_deleted().search_by_name(search).recent())
    return render_template('supervisor/subjects/index.html', title='Subjects', pagination=pagination,
                           subjects=pagination.items, search=search)


@bp.route('/subjects/<int:subject_id>')
@login_required
@supervisor_required
def show_subject(subject_id):
    subject = _load_subject(subject_id)
    if subject is None:
        return redirect(url_for('supervisor.subjects'))
    authorize('read', subject)
    return render_template('supervisor/subjects/show.html', title=subject.name, subject=subject,
                           tasks=subject.tasks)


@bp.route('/subjects/new', methods=['GET', 'POST'])
@login_required
@supervisor_required
def new_subject():
    """Creates a subject together with its initial tasks (``tasks[i][name]`` fields)."""
    authorize('create', Subject)
    subject = Subject()
    if request.method == 'POST':
        rows = nested_rows(request.form, 'tasks')
        errors = _apply_subject_form(subject)
        errors.update(_task_row_errors(rows))
        if errors:
            flash_errors(errors)
            return _render_subject_form(subject, 'New Subject', rows), 422
        try:
            db.session.add(subject)
            db.session.flush()
            _apply_task_rows(subject, rows)
            _sync_categories(subject, to_id_list(request.form.getlist('category_ids')))
            db.session.commit()
            flash('Subject created successfully.', 'success')
            return redirect(url_for('supervisor.show_subject', subject_id=subject.id))
        except SQLAlchemyError as e:
            db.session.rollback()
            flash('Could not create the subject.', 'danger')
            current_app.logger.error(f"Subject creation error: {e}")
            return _render_subject_form(subject, 'New Subject', rows), 422

    return _render_subject_form(subject, 'New Subject', [])


@bp.route('/subjects/<int:subject_id>/edit', methods=['GET', 'POST'])
@login_required
@supervisor_required
def edit_subject(subject_id):
    subject = _load_subject(subject_id)
    if subject is None:
        return redirect(url_for('supervisor.subjects'))
    authorize('update', subject)

    if request.method == 'POST':
        rows = nested_rows(request.form, 'tasks')
        errors = _apply_subject_form(subject)
        errors.update(_task_row_errors(rows))
        if errors:
            flash_errors(errors)
            return render_invalid(lambda: _render_subject_form(subject, 'Edit Subject', rows))
        _apply_task_rows(subject, rows)
        _sync_categories(subject, to_id_list(request.form.getlist('category_ids')))
        if commit_or_rollback('Subject updated successfully.', 'Could not update the subject.', 'Subject update error'):
            return redirect(url_for('supervisor.show_subject', subject_id=subject.id))

    rows = [{'id': task.id, 'name': task.name, 'description': task.description or ''} for task in subject.tasks]
    return _render_subject_form(subject, 'Edit Subject', rows)


@bp.route('/subjects/<int:subject_id>/delete', methods=['POST'])
@login_required
@supervisor_required
def delete_subject(subject_id):
    subject = _load_subject(subject_id)
    if subject is None:
        return redirect(url_for('supervisor.subjects'))
    authorize('destroy', subject)
    subject.soft_delete()
    commit_or_rollback('Subject deleted successfully.', 'Could not delete the subject.', 'Subject deletion error')
    return redirect(url_for('supervisor.subjects'))


@bp.route('/subjects/<int:subject_id>/tasks/delete', methods=['POST'])
@login_required
@supervisor_required
def destroy_subject_tasks(subject_id):
    """Soft deletes the selected tasks of a subject."""
    subject = _load_subject(subject_id)
    if subject is None:
        return redirect(url_for('supervisor.subjects'))
    authorize('update', subject)

    task_ids = to_id_list(request.form.getlist('task_ids'))
    if not task_ids:
        flash('Please select at least one task.', 'warning')
        return redirect(url_for('supervisor.show_subject', subject_id=subject.id))

    tasks = subject.task_query().filter(Task.id.in_(task_ids)).all()
    for task in tasks:
        task.soft_delete()
    commit_or_rollback(f'{len(tasks)} task(s) deleted.', 'Could not delete the selected tasks.', 'Task bulk deletion error')
    return redirect(url_for('supervisor.show_subject', subject_id=subject.id))


# --- Tasks ---

def _load_task(task_id):
    task = db.session.get(Task, task_id)
    if task is None or task.is_deleted or task.taskable_type != 'Subject':
        flash('Task not found.', 'danger')
        return None
    return task


def _live_subjects():
    return Subject.query.not_deleted().ordered_by_name().all()


@bp.route('/tasks')
@login_required
@supervisor_required
def tasks():
    subject_id = request.args.get('subject_id', type=int)
    search = request.args.get('search', '').strip()
    live_subject_ids = db.session.query(Subject.id).filter(Subject.deleted_at.is_(None))
    query = (Task.query.not_deleted().for_taskable_type('Subject')
             .filter(Task.taskable_id.in_(live_subject_ids))
             .by_subject(subject_id).search_by_name(search).recent())
    pagination = paginate(query)
    return render_template('supervisor/tasks/index.html', title='Tasks', pagination=pagination,
                           tasks=pagination.items, subjects=_live_subjects(), selected_subject_id=subject_id,
                           search=search)


@bp.route('/tasks/<int:task_id>')
@login_required
@supervisor_required
def show_task(task_id):
    task = _load_task(task_id)
    if task is None:
        return redirect(url_for('supervisor.tasks'))
    authorize('read', task)
    return render_template('supervisor/tasks/show.html', title=task.name, task=task, subject=task.taskable)


def _apply_task_form(task):
    task.name = (request.form.get('name') or '').strip()
    task.description = (request.form.get('description') or '').strip() or None
    errors = task.validate()
    taskable = task.taskable
    if taskable is not None and taskable.is_deleted:
        errors.setdefault('taskable', []).append('must exist')
    return errors


@bp.route('/tasks/new', methods=['GET', 'POST'])
@login_required
@supervisor_required
def new_task():
    authorize('create', Task)
    task = Task(taskable_type='Subject', taskable_id=request.args.get('subject_id', type=int))
    if request.method == 'POST':
        task.taskable_id = request.form.get('subject_id', type=int)
        errors = _apply_task_form(task)
        if errors:
            flash_errors(errors)
            return render_template('supervisor/tasks/form.html', title='New Task', task=task,
                                   subjects=_live_subjects()), 422
        db.session.add(task)
        if commit_or_rollback('Task created successfully.', 'Could not create the task.', 'Task creation error'):
            return redirect(url_for('supervisor.show_task', task_id=task.id))

    return render_template('supervisor/tasks/form.html', title='New Task', task=task, subjects=_live_subjects())


@bp.route('/tasks/<int:task_id>/edit', methods=['GET', 'POST'])
@login_required
@supervisor_required
def edit_task(task_id):
    task = _load_task(task_id)
    if task is None:
        return redirect(url_for('supervisor.tasks'))
    authorize('update', task)

    if request.method == 'POST':
        errors = _apply_task_form(task)
        if errors:
            flash_errors(errors)
            return render_invalid(lambda: render_template('supervisor/tasks/form.html', title='Edit Task',
                                                          task=task, subjects=_live_subjects()))
        if commit_or_rollback('Task updated successfully.', 'Could not update the task.', 'Task update error'):
            return redirect(url_for('supervisor.show_task', task_id=task.id))

    return render_template('supervisor/tasks/form.html', title='Edit Task', task=task, subjects=_live_subjects())


@bp.route('/tasks/<int:task_id>/delete', methods=['POST'])
@login_required
@supervisor_required
def delete_task(task_id):
    task = _load_task(task_id)
    if task is None:
        return redirect(url_for('supervisor.tasks'))
    authorize('destroy', task)
    task.soft_delete()
    commit_or_rollback('Task deleted successfully.', 'Could not delete the task.', 'Task deletion error')
    return redirect(url_for('supervisor.tasks'))


# --- Categories ---

@bp.route('/categories')
@login_required
@supervisor_required
def categories():
    pagination = paginate(Category.query.order_by(Category.name.asc()))
    return render_template('supervisor/categories/index.html', title='Categories', pagination=pagination,
                           categories=pagination.items)


@bp.route('/categories/new', methods=['GET', 'POST'])
@login_required
@supervisor_required
def new_category():
    authorize('create', Category)
    category = Category()
    if request.method == 'POST':
        category.name = (request.form.get('name') or '').strip()
        errors = category.validate()
        if errors:
            flash_errors(errors)
            return render_template('supervisor/categories/form.html', title='New Category', category=category), 422
        db.session.add(category)
        if commit_or_rollback('Category created successfully.', 'Could not create the category.', 'Category creation error'):
            return redirect(url_for('supervisor.categories'))

    return render_template('supervisor/categories/form.html', title='New Category', category=category)


@bp.route('/categories/<int:category_id>/edit', methods=['GET', 'POST'])
@login_required
@supervisor_required
def edit_category(category_id):
    category = db.session.get(Category, category_id)
    if category is None:
        flash('Category not found.', 'danger')
        return redirect(url_for('supervisor.categories'))
    authorize('update', category)

    if request.method == 'POST':
        category.name = (request.form.get('name') or '').strip()
        errors = category.validate()
        if errors:
            flash_errors(errors)
            return render_invalid(lambda: render_template('supervisor/categories/form.html', title='Edit Category',
                                                          category=category))
        if commit_or_rollback('Category updated successfully.', 'Could not update the category.', 'Category update error'):
            return redirect(url_for('supervisor.categories'))

    return render_template('supervisor/categories/form.html', title='Edit Category', category=category)


@bp.route('/categories/<int:category_id>/delete', methods=['POST'])
@login_required
@supervisor_required
def delete_category(category_id):
    category = db.session.get(Category, category_id)
    if category is None:
        flash('Category not found.', 'danger')
        return redirect(url_for('supervisor.categories'))
    authorize('destroy', category)
    db.session.delete(category)
    commit_or_rollback('Category deleted successfully.', 'Could not delete the category.', 'Category deletion error')
    return redirect(url_for('supervisor.categories'))


# --- Users ---

def _load_trainee(user_id, action):
    user = db.session.get(User, user_id)
    if user is None:
        flash('User not found.', 'danger')
        return None
    authorize(action, user)
    return user


@bp.route('/users')
@login_required
@supervisor_required
def users():
    """Trainees of the supervised courses, filterable by course, status and name."""
    course_id = request.args.get('course_id', type=int)
    status = request.args.get('status')
    search = request.args.get('search', '').strip()
    course_ids = [course_id] if course_id in current_user.supervised_course_ids else []
    query = (User.query.supervised_by(current_user.id).by_course(course_ids)
             .filter_by_status(to_bool(status)).filter_by_name(search).sort_by_name())
    pagination = paginate(query)
    return render_template('supervisor/users/index.html', title='Trainees', pagination=pagination,
                           users=pagination.items, courses=_supervised_courses(), selected_course_id=course_id,
                           selected_status=status, search=search)


@bp.route('/users/<int:user_id>')
@login_required
@supervisor_required
def show_user(user_id):
    user = _load_trainee(user_id, 'read')
    if user is None:
        return redirect(url_for('supervisor.users'))
    supervised_ids = set(current_user.supervised_course_ids)
    user_courses = [uc for uc in user.user_courses if uc.course_id in supervised_ids]
    return render_template('supervisor/users/show.html', title=user.name, user=user, user_courses=user_courses,
                           genders=GENDERS, user_course_statuses=USER_COURSE_STATUSES)


@bp.route('/users/<int:user_id>', methods=['POST'])
@login_required
@supervisor_required
def update_user(user_id):
    user = _load_trainee(user_id, 'update')
    if user is None:
        return redirect(url_for('supervisor.users'))

    user.name = (request.form.get('name') or '').strip()
    user.birthday = to_date(request.form.get('birthday'))
    user.gender = request.form.get('gender')
    errors = user.validate()
    if errors:
        db.session.rollback()
        flash_errors(errors)
    else:
        commit_or_rollback('User updated successfully.', 'Could not update the user.', 'Trainee update error')
    return redirect(url_for('supervisor.show_user', user_id=user.id))


@bp.route('/users/<int:user_id>/status', methods=['POST'])
@login_required
@supervisor_required
def update_user_status(user_id):
    """Toggles whether the trainee may sign in."""
    user = _load_trainee(user_id, 'update')
    if user is None:
        return redirect(url_for('supervisor.users'))
    user.activated = not user.activated
    state = 'activated' if user.activated else 'deactivated'
    commit_or_rollback(f'{user.name} has been {state}.', 'Could not change the user status.', 'Trainee status error')
    return redirect(safe_redirect_target(request.form.get('next')) or url_for('supervisor.users'))


@bp.route('/users/<int:user_id>/user_course_status', methods=['POST'])
@login_required
@supervisor_required
def update_user_course_status(user_id):
    user = _load_trainee(user_id, 'update')
    if user is None:
        return redirect(url_for('supervisor.users'))

    user_course = UserCourse.query.filter_by(user_id=user.id, course_id=request.form.get('course_id', type=int)).first()
    if user_course is None:
        flash('Enrollment not found.', 'danger')
        return redirect(url_for('supervisor.show_user', user_id=user.id))
    authorize('update', user_course)

    status = request.form.get('status')
    if status not in USER_COURSE_STATUSES:
        flash('Invalid course status.', 'danger')
        return redirect(url_for('supervisor.show_user', user_id=user.id))
    user_course.status = status
    commit_or_rollback('Course status updated.', 'Could not update the course status.', 'User course status error')
    return redirect(url_for('supervisor.show_user', user_id=user.id))


@bp.route('/users/<int:user_id>/user_courses/<int:user_course_id>/delete', methods=['POST'])
@login_required
@supervisor_required
def delete_user_course(user_id, user_course_id):
    user_course = db.session.get(UserCourse, user_course_id)
    if user_course is None or user_course.user_id != user_id:
        flash('Enrollment not found.', 'danger')
        return redirect(url_for('supervisor.users'))
    authorize('destroy', user_course)
    db.session.delete(user_course)
    commit_or_rollback('Trainee removed from the course.', 'Could not remove the trainee from the course.',
                       'User course deletion error')
    return redirect(url_for('supervisor.show_user', user_id=user_id))


@bp.route('/users/bulk_deactivate', methods=['POST'])
@login_required
@supervisor_required
def bulk_deactivate():
    user_ids = to_id_list(request.form.getlist('user_ids'))
    if not user_ids:
        flash('Please select at least one user.', 'warning')
        return redirect(url_for('supervisor.users'))

    ability = current_ability()
    targets = [user for user in User.query.filter(User.id.in_(user_ids)).all() if ability.can('update', user)]
    for user in targets:
        user.activated = False
    commit_or_rollback(f'{len(targets)} user(s) deactivated.', 'Could not deactivate the selected users.',
                       'Bulk deactivation error')
    return redirect(url_for('supervisor.users'))


# --- Courses ---

def _load_course(course_id, action):
    course = db.session.get(Course, course_id)
    if course is None:
        flash('Course not found.', 'danger')
        return None
    authorize(action, course)
    return course


def _apply_course_form(course):
    form = request.form
    course.name = (form.get('name') or '').strip()
    course.link_to_course = (form.get('link_to_course') or '').strip() or None
    course.start_date = to_date(form.get('start_date'))
    course.finish_date = to_date(form.get('finish_date'))
    course.status = form.get('status') or course.status or 'not_started'
    return course.validate()


@bp.route('/courses')
@login_required
@supervisor_required
def courses():
    status = request.args.get('status')
    search = request.args.get('search', '').strip()
    query = (Course.query.supervised_by(current_user.id).by_status(status)
             .search_by_name(search).ordered_by_start_date())
    pagination = paginate(query)
    return render_template('supervisor/courses/index.html', title='My Courses', pagination=pagination,
                           courses=pagination.items, statuses=COURSE_STATUSES, selected_status=status,
                           search=search)


@bp.route('/courses/<int:course_id>')
@login_required
@supervisor_required
def show_course(course_id):
    course = _load_course(course_id, 'read')
    if course is None:
        return redirect(url_for('supervisor.courses'))
    return render_template('supervisor/courses/show.html', title=course.name, course=course,
                           course_subjects=course.active_course_subjects)


@bp.route('/courses/new', methods=['GET', 'POST'])
@login_required
@supervisor_required
def new_course():
    """Creates a course; its creator becomes its first supervisor."""
    authorize('create', Course)
    course = Course(user_id=current_user.id, status='not_started')
    if request.method == 'POST':
        upload = chosen_file('image')
        errors = _apply_course_form(course)
        errors.update(image_errors(upload))
        if errors:
            flash_errors(errors)
            return render_template('supervisor/courses/form.html', title='New Course', course=course,
                                   statuses=COURSE_STATUSES), 422
        db.session.add(course)
        course.course_supervisors.append(CourseSupervisor(user_id=current_user.id))
        if commit_or_rollback('Course created successfully.', 'Could not create the course.', 'Course creation error'):
            current_app.logger.info("Course %s created by supervisor %s", course.id, current_user.id)
            if upload is not None and not commit_with_image(course, upload, 'Course image upload error'):
                flash('The course was created but its image could not be saved.', 'warning')
            return redirect(url_for('supervisor.show_course', course_id=course.id))

    return render_template('supervisor/courses/form.html', title='New Course', course=course, statuses=COURSE_STATUSES)


@bp.route('/courses/<int:course_id>/edit', methods=['GET', 'POST'])
@login_required
@supervisor_required
def edit_course(course_id):
    course = _load_course(course_id, 'update')
    if course is None:
        return redirect(url_for('supervisor.courses'))

    if request.method == 'POST':
        upload = chosen_file('image')
        errors = _apply_course_form(course)
        errors.update(image_errors(upload))
        if errors:
            flash_errors(errors)
            return render_invalid(lambda: render_template('supervisor/courses/form.html', title='Edit Course',
                                                          course=course, statuses=COURSE_STATUSES))
        if commit_with_image(course, upload, 'Course update error'):
            flash('Course updated successfully.', 'success')
            return redirect(url_for('supervisor.show_course', course_id=course.id))
        flash('Could not update the course.', 'danger')

    return render_template('supervisor/courses/form.html', title='Edit Course', course=course,
                           statuses=COURSE_STATUSES)


@bp.route('/courses/<int:course_id>/members')
@login_required
@supervisor_required
def course_members(course_id):
    course = _load_course(course_id, 'members')
    if course is None:
        return redirect(url_for('supervisor.courses'))
    return render_template('supervisor/courses/members.html', title=f'Members of {course.name}', course=course,
                           user_courses=course.user_courses, user_course_statuses=USER_COURSE_STATUSES)


@bp.route('/courses/<int:course_id>/subjects')
@login_required
@supervisor_required
def course_subjects(course_id):
    course = _load_course(course_id, 'subjects')
    if course is None:
        return redirect(url_for('supervisor.courses'))
    used_ids = [course_subject.subject_id for course_subject in course.course_subjects]
    available = Subject.query.not_deleted().filter(~Subject.id.in_(used_ids)).ordered_by_name().all()
    return render_template('supervisor/courses/subjects.html', title=f'Subjects of {course.name}', course=course,
                           course_subjects=course.active_course_subjects, available_subjects=available)


@bp.route('/courses/<int:course_id>/supervisors')
@login_required
@supervisor_required
def course_supervisors(course_id):
    course = _load_course(course_id, 'supervisors')
    if course is None:
        return redirect(url_for('supervisor.courses'))
    current_ids = [course_supervisor.user_id for course_supervisor in course.course_supervisors]
    available = User.query.filter(User.role == 'supervisor', ~User.id.in_(current_ids)).sort_by_name().all()
    return render_template('supervisor/courses/supervisors.html', title=f'Supervisors of {course.name}',
                           course=course, course_supervisors=course.course_supervisors,
                           available_supervisors=available)


@bp.route('/courses/<int:course_id>/search_members')
@login_required
@supervisor_required
def search_members(course_id):
    """JSON list of trainees not yet enrolled in the course, matched on name or email."""
    course = db.session.get(Course, course_id)
    if course is None:
        return jsonify({'error': 'Course not found.'}), 404
    authorize('members', course)

    search = request.args.get('search', '').strip().lower()
    member_ids = db.session.query(UserCourse.user_id).filter(UserCourse.course_id == course.id)
    query = User.query.filter(User.role == 'trainee', User.activated.is_(True), ~User.id.in_(member_ids))
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(func.lower(User.name).like(pattern), func.lower(User.email).like(pattern)))
    users = query.sort_by_name().limit(MEMBER_SEARCH_LIMIT).all()
    return jsonify([{'id': user.id, 'name': user.name, 'email': user.email} for user in users])


@bp.route('/courses/<int:course_id>/leave', methods=['POST'])
@login_required
@supervisor_required
def leave_course(course_id):
    course = _load_course(course_id, 'leave')
    if course is None:
        return redirect(url_for('supervisor.courses'))

    if len(course.course_supervisors) <= 1:
        flash('You are the only supervisor of this course and cannot leave it.', 'warning')
        return redirect(url_for('supervisor.show_course', course_id=course.id))

    membership = CourseSupervisor.query.filter_by(course_id=course.id, user_id=current_user.id).first()
    db.session.delete(membership)
    commit_or_rollback(f'You have left {course.name}.', 'Could not leave the course.', 'Course leave error')
    return redirect(url_for('supervisor.courses'))


@bp.route('/courses/<int:course_id>/add_subject', methods=['POST'])
@login_required
@supervisor_required
def add_subject(course_id):
    """Places a subject at the end of the course and copies its tasks."""
    course = _load_course(course_id, 'add_subject')
    if course is None:
        return redirect(url_for('supervisor.courses'))
    back = url_for('supervisor.course_subjects', course_id=course.id)

    subject = db.session.get(Subject, request.form.get('subject_id', type=int) or 0)
    if subject is None or subject.is_deleted:
        flash('Subject not found.', 'danger')
        return redirect(back)
    if CourseSubject.query.filter_by(course_id=course.id, subject_id=subject.id).first() is not None:
        flash('This subject is already part of the course.', 'warning')
        return redirect(back)

    course_subject = CourseSubject(
        course=course,
        subject=subject,
        position=course.next_subject_position(),
        start_date=to_date(request.form.get('start_date')),
        finish_date=to_date(request.form.get('finish_date')),
        status='not_started',
    )
    try:
        db.session.add(course_subject)
        db.session.flush()
        course_subject.copy_subject_tasks()
        db.session.commit()
        flash(f'{subject.name} added to the course.', 'success')
    except SQLAlchemyError as e:
        db.session.rollback()
        flash('Could not add the subject to the course.', 'danger')
        current_app.logger.error(f"Add subject error: {e}")
    return redirect(back)


# --- Subject details (a course subject and the trainees' progress on it) ---

def _load_course_subject(course_id, course_subject_id, action):
    course_subject = db.session.get(CourseSubject, course_subject_id)
    if course_subject is None or course_subject.course_id != course_id or course_subject.subject.is_deleted:
        flash('Subject not found in this course.', 'danger')
        return None
    authorize(action, course_subject)
    return course_subject


def _subject_details_url(course_subject):
    return url_for('supervisor.subject_details', course_id=course_subject.course_id,
                   course_subject_id=course_subject.id)


@bp.route('/courses/<int:course_id>/subject_details/<int:course_subject_id>')
@login_required
@supervisor_required
def subject_details(course_id, course_subject_id):
    course_subject = _load_course_subject(course_id, course_subject_id, 'read')
    if course_subject is None:
        return redirect(url_for('supervisor.show_course', course_id=course_id))
    user_subjects = course_subject.user_subjects
    comments = {user_subject.id: user_subject.comments for user_subject in user_subjects}
    return render_template('supervisor/subject_details/show.html', title=course_subject.subject.name,
                           course=course_subject.course, course_subject=course_subject,
                           tasks=course_subject.tasks, user_subjects=user_subjects, comments=comments)


@bp.route('/courses/<int:course_id>/subject_details/<int:course_subject_id>/tasks', methods=['POST'])
@login_required
@supervisor_required
def create_course_subject_task(course_id, course_subject_id):
    course_subject = _load_course_subject(course_id, course_subject_id, 'update')
    if course_subject is None:
        return redirect(url_for('supervisor.show_course', course_id=course_id))

    task = Task(
        name=(request.form.get('name') or '').strip(),
        description=(request.form.get('description') or '').strip() or None,
        taskable_type='CourseSubject',
        taskable_id=course_subject.id,
    )
    errors = task.validate()
    if errors:
        flash_errors(errors)
    else:
        db.session.add(task)
        commit_or_rollback('Task added.', 'Could not add the task.', 'Course subject task creation error')
    return redirect(_subject_details_url(course_subject))


@bp.route('/courses/<int:course_id>/subject_details/<int:course_subject_id>/tasks/<int:task_id>',
          methods=['POST'])
@login_required
@supervisor_required
def update_course_subject_task(course_id, course_subject_id, task_id):
    course_subject = _load_course_subject(course_id, course_subject_id, 'update')
    if course_subject is None:
        return redirect(url_for('supervisor.show_course', course_id=course_id))

    task = course_subject.task_query().filter(Task.id == task_id).first()
    if task is None:
        flash('Task not found.', 'danger')
        return redirect(_subject_details_url(course_subject))

    task.name = (request.form.get('name') or '').strip()
    task.description = (request.form.get('description') or '').strip() or None
    errors = task.validate()
    if errors:
        db.session.rollback()
        flash_errors(errors)
    else:
        commit_or_rollback('Task updated.', 'Could not update the task.', 'Course subject task update error')
    return redirect(_subject_details_url(course_subject))


@bp.route('/courses/<int:course_id>/subject_details/<int:course_subject_id>/user_subjects/<int:user_subject_id>/score',
          methods=['POST'])
@login_required
@supervisor_required
def update_score(course_id, course_subject_id, user_subject_id):
    course_subject = _load_course_subject(course_id, course_subject_id, 'read')
    if course_subject is None:
        return redirect(url_for('supervisor.show_course', course_id=course_id))

    user_subject = db.session.get(UserSubject, user_subject_id)
    if user_subject is None or user_subject.course_subject_id != course_subject.id:
        flash('Trainee progress not found.', 'danger')
        return redirect(_subject_details_url(course_subject))
    authorize('update', user_subject)

    user_subject.score = to_number(request.form.get('score'))
    errors = user_subject.validate()
    if errors:
        db.session.rollback()
        flash_errors(errors)
    else:
        commit_or_rollback('Score updated.', 'Could not update the score.', 'Score update error')
    return redirect(_subject_details_url(course_subject))


@bp.route('/courses/<int:course_id>/subject_details/<int:course_subject_id>/comments', methods=['POST'])
@login_required
@supervisor_required
def create_comment(course_id, course_subject_id):
    course_subject = _load_course_subject(course_id, course_subject_id, 'read')
    if course_subject is None:
        return redirect(url_for('supervisor.show_course', course_id=course_id))

    model = COMMENTABLE_MODELS.get(request.form.get('commentable_type'))
    commentable = db.session.get(model, request.form.get('commentable_id', type=int) or 0) if model else None
    if commentable is None:
        flash('Nothing to comment on.', 'danger')
        return redirect(_subject_details_url(course_subject))

    comment = Comment(user_id=current_user.id, content=(request.form.get('content') or '').strip())
    comment.commentable = commentable
    authorize('create', comment)
    errors = comment.validate()
    if errors:
        flash_errors(errors)
    else:
        db.session.add(comment)
        commit_or_rollback('Comment posted.', 'Could not post the comment.', 'Comment creation error')
    return redirect(_subject_details_url(course_subject))


def _load_comment(comment_id, action):
    comment = db.session.get(Comment, comment_id)
    if comment is None:
        flash('Comment not found.', 'danger')
        return None
    authorize(action, comment)
    if comment.user_id != current_user.id:
        flash('You can only change your own comments.', 'danger')
        return None
    return comment


@bp.route('/courses/<int:course_id>/subject_details/<int:course_subject_id>/comments/<int:comment_id>',
          methods=['POST'])
@login_required
@supervisor_required
def update_comment(course_id, course_subject_id, comment_id):
    course_subject = _load_course_subject(course_id, course_subject_id, 'read')
    if course_subject is None:
        return redirect(url_for('supervisor.show_course', course_id=course_id))
    comment = _load_comment(comment_id, 'update')
    if comment is None:
        return redirect(_subject_details_url(course_subject))

    comment.content = (request.form.get('content') or '').strip()
    errors = comment.validate()
    if errors:
        db.session.rollback()
        flash_errors(errors)
    else:
        commit_or_rollback('Comment updated.', 'Could not update the comment.', 'Comment update error')
    return redirect(_subject_details_url(course_subject))


@bp.route('/courses/<int:course_id>/subject_details/<int:course_subject_id>/comments/<int:comment_id>/delete',
          methods=['POST'])
@login_required
@supervisor_required
def destroy_comment(course_id, course_subject_id, comment_id):
    course_subject = _load_course_subject(course_id, course_subject_id, 'read')
    if course_subject is None:
        return redirect(url_for('supervisor.show_course', course_id=course_id))
    comment = _load_comment(comment_id, 'destroy')
    if comment is None:
        return redirect(_subject_details_url(course_subject))

    db.session.delete(comment)
    commit_or_rollback('Comment deleted.', 'Could not delete the comment.', 'Comment deletion error')
    return redirect(_subject_details_url(course_subject))


# --- User courses (enrollment) ---

@bp.route('/courses/<int:course_id>/user_courses', methods=['POST'])
@login_required
@supervisor_required
def create_user_course(course_id):
    """Enrolls a trainee in the course."""
    course = _load_course(course_id, 'members')
    if course is None:
        return redirect(url_for('supervisor.courses'))
    back = url_for('supervisor.course_members', course_id=course.id)

    user = db.session.get(User, request.form.get('user_id', type=int) or 0)
    if user is None or not user.is_trainee:
        flash('Only trainees can be enrolled in a course.', 'danger')
        return redirect(back)
    if course.has_member(user):
        flash(f'{user.name} is already enrolled in this course.', 'warning')
        return redirect(back)

    user_course = UserCourse(user=user, course=course, status='not_started')
    authorize('create', user_course)
    db.session.add(user_course)
    commit_or_rollback(f'{user.name} enrolled in {course.name}.', 'Could not enroll the trainee.', 'Enrollment error')
    return redirect(back)


@bp.route('/courses/<int:course_id>/user_courses/<int:user_course_id>/delete', methods=['POST'])
@login_required
@supervisor_required
def destroy_user_course(course_id, user_course_id):
    user_course = db.session.get(UserCourse, user_course_id)
    if user_course is None or user_course.course_id != course_id:
        flash('Enrollment not found.', 'danger')
        return redirect(url_for('supervisor.course_members', course_id=course_id))
    authorize('destroy', user_course)
    db.session.delete(user_course)
    commit_or_rollback('Trainee removed from the course.', 'Could not remove the trainee.', 'Enrollment removal error')
    return redirect(url_for('supervisor.course_members', course_id=course_id))


# --- Course supervisors ---

@bp.route('/courses/<int:course_id>/course_supervisors', methods=['POST'])
@login_required
@supervisor_required
def create_course_supervisor(course_id):
    course = _load_course(course_id, 'supervisors')
    if course is None:
        return redirect(url_for('supervisor.courses'))
    back = url_for('supervisor.course_supervisors', course_id=course.id)

    user = db.session.get(User, request.form.get('user_id', type=int) or 0)
    if user is None or not user.is_supervisor:
        flash('Only supervisors can supervise a course.', 'danger')
        return redirect(back)
    if course.is_supervised_by(user):
        flash(f'{user.name} already supervises this course.', 'warning')
        return redirect(back)

    course.course_supervisors.append(CourseSupervisor(user_id=user.id))
    commit_or_rollback(f'{user.name} now supervises {course.name}.', 'Could not add the supervisor.', 'Supervisor add error')
    return redirect(back)


@bp.route('/courses/<int:course_id>/course_supervisors/<int:course_supervisor_id>/delete', methods=['POST'])
@login_required
@supervisor_required
def destroy_course_supervisor(course_id, course_supervisor_id):
    course = _load_course(course_id, 'supervisors')
    if course is None:
        return redirect(url_for('supervisor.courses'))
    back = url_for('supervisor.course_supervisors', course_id=course.id)

    course_supervisor = db.session.get(CourseSupervisor, course_supervisor_id)
    if course_supervisor is None or course_supervisor.course_id != course.id:
        flash('Supervisor not found in this course.', 'danger')
        return redirect(back)
    if len(course.course_supervisors) <= 1:
        flash('A course must keep at least one supervisor.', 'warning')
        return redirect(back)

    removed_self = course_supervisor.user_id == current_user.id
    db.session.delete(course_supervisor)
    commit_or_rollback('Supervisor removed from the course.', 'Could not remove the supervisor.', 'Supervisor removal error')
    if removed_self:
        return redirect(url_for('supervisor.courses'))
    return redirect(back)


# --- Course subjects ---

@bp.route('/courses/<int:course_id>/course_subjects/<int:course_subject_id>/delete', methods=['POST'])
@login_required
@supervisor_required
def destroy_course_subject(course_id, course_subject_id):
    """Removes a subject from the course; its copied tasks are soft deleted."""
    course_subject = _load_course_subject(course_id, course_subject_id, 'destroy')
    if course_subject is None:
        return redirect(url_for('supervisor.show_course', course_id=course_id))
    for task in course_subject.task_query():
        task.soft_delete()
    db.session.delete(course_subject)
    commit_or_rollback('Subject removed from the course.', 'Could not remove the subject.', 'Course subject deletion error')
    return redirect(url_for('supervisor.course_subjects', course_id=course_id))


@bp.route('/courses/<int:course_id>/course_subjects/<int:course_subject_id>/finish', methods=['POST'])
@login_required
@supervisor_required
def finish_course_subject(course_id, course_subject_id):
    course_subject = _load_course_subject(course_id, course_subject_id, 'update')
    if course_subject is None:
        return redirect(url_for('supervisor.show_course', course_id=course_id))
    if course_subject.status == 'finished':
        flash('This subject is already finished.', 'info')
        return redirect(url_for('supervisor.course_subjects', course_id=course_id))
    course_subject.finish()
    commit_or_rollback('Subject marked as finished.', 'Could not finish the subject.', 'Course subject finish error')
    return redirect(url_for('supervisor.course_subjects', course_id=course_id))
