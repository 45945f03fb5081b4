import re
import secrets
from datetime import date, datetime, timezone

from flask_login import UserMixin
from sqlalchemy import event, func
from sqlalchemy.orm import Session, with_loader_criteria
from werkzeug.security import check_password_hash, generate_password_hash

from .constants import (
    CATEGORY_MAX_NAME_LENGTH,
    COMMENT_MAX_CONTENT_LENGTH,
    COMMENTABLE_TYPES,
    COURSE_MAX_NAME_LENGTH,
    COURSE_STATUSES,
    DAILY_REPORT_MAX_CONTENT_LENGTH,
    DAILY_REPORT_STATUSES,
    GENDERS,
    ROLES,
    SUBJECT_MAX_NAME_LENGTH,
    SUBJECT_MAX_SCORE_LIMIT,
    TASK_MAX_NAME_LENGTH,
    TASKABLE_TYPES,
    USER_BIRTHDAY_VALID_YEARS,
    USER_MAX_EMAIL_LENGTH,
    USER_MAX_NAME_LENGTH,
    USER_SUBJECT_STATUSES,
    USER_TASK_STATUSES,
)
from .extensions import db

VALID_EMAIL_REGEX = re.compile(r'\A[\w+\-.]+@[a-z\d\-.]+\.[a-z]+\Z', re.IGNORECASE)


def utcnow():
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# --- Mixins ---

class TimestampMixin:
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ValidationMixin:
    """
    Models collect their validation errors as ``{field: [messages]}``.
    An empty dict means the record can be saved.
    """

    def validate(self):
        return {}

    def is_valid(self):
        return not self.validate()

    @staticmethod
    def full_messages(errors):
        """Turns an errors dict into human readable sentences for flashing."""
        return [
            f"{field.replace('_', ' ').capitalize()} {message}"
            for field, messages in errors.items()
            for message in messages
        ]


def _add_error(errors, field, message):
    errors.setdefault(field, []).append(message)


def _check_text(errors, field, value, max_length, required=True):
    value = (value or '').strip()
    if not value:
        if required:
            _add_error(errors, field, "can't be blank")
        return
    if len(value) > max_length:
        _add_error(errors, field, f'is too long (maximum is {max_length} characters)')


def _check_integer(errors, field, value, greater_than=None, less_than_or_equal_to=None):
    if value is None or value == '':
        _add_error(errors, field, "can't be blank")
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _add_error(errors, field, 'is not a number')
        return
    if isinstance(value, float) and not value.is_integer():
        _add_error(errors, field, 'must be an integer')
        return
    if greater_than is not None and value <= greater_than:
        _add_error(errors, field, f'must be greater than {greater_than}')
    if less_than_or_equal_to is not None and value > less_than_or_equal_to:
        _add_error(errors, field, f'must be less than or equal to {less_than_or_equal_to}')


class SoftDeleteQuery(db.Query):
    """
    Soft-deleted rows are hidden from every SELECT unless the query is
    widened with ``with_deleted`` or ``only_deleted``.
    """

    def with_deleted(self):
        return self.execution_options(include_deleted=True)

    def not_deleted(self):
        entity = self.column_descriptions[0]['entity']
        return self.filter(entity.deleted_at.is_(None))

    def only_deleted(self):
        entity = self.column_descriptions[0]['entity']
        return self.with_deleted().filter(entity.deleted_at.isnot(None))


class SoftDeleteMixin:
    deleted_at = db.Column(db.DateTime, nullable=True, index=True)

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def soft_delete(self):
        self.deleted_at = utcnow()

    def restore(self):
        self.deleted_at = None


@event.listens_for(Session, 'do_orm_execute')
def _hide_soft_deleted(execute_state):
    # Attribute refreshes and relationship loads still reach deleted rows
    if (execute_state.is_select
            and not execute_state.is_column_load
            and not execute_state.is_relationship_load
            and not execute_state.execution_options.get('include_deleted', False)):
        execute_state.statement = execute_state.statement.options(
            with_loader_criteria(SoftDeleteMixin, lambda cls: cls.deleted_at.is_(None), include_aliases=True)
        )


# --- Users ---

class UserQuery(db.Query):
    def filter_by_name(self, search):
        if not search:
            return self
        return self.filter(func.lower(User.name).like(f'%{search.strip().lower()}%'))

    def filter_by_status(self, active):
        if active is None:
            return self
        return self.filter(User.activated.is_(bool(active)))

    def by_course(self, course_ids):
        if not course_ids:
            return self
        member_ids = db.session.query(UserCourse.user_id).filter(UserCourse.course_id.in_(course_ids))
        return self.filter(User.id.in_(member_ids))

    def supervised_by(self, supervisor_id):
        """Trainees enrolled in at least one course the given supervisor supervises."""
        course_ids = db.session.query(CourseSupervisor.course_id).filter(CourseSupervisor.user_id == supervisor_id)
        member_ids = db.session.query(UserCourse.user_id).filter(UserCourse.course_id.in_(course_ids))
        return self.filter(User.role == 'trainee', User.id.in_(member_ids))

    def recent(self):
        return self.order_by(User.created_at.desc(), User.id.desc())

    def sort_by_name(self):
        return self.order_by(User.name.asc())


class User(UserMixin, TimestampMixin, ValidationMixin, db.Model):
    """
    A person using SkillTrack. ``role`` decides which namespace they work in:
    'trainee', 'supervisor' or 'admin'.
    """
    query_class = UserQuery
    __table_args__ = (db.UniqueConstraint('provider', 'uid'),)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(USER_MAX_NAME_LENGTH), nullable=False)
    email = db.Column(db.String(USER_MAX_EMAIL_LENGTH), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    birthday = db.Column(db.Date, nullable=True)
    gender = db.Column(db.String(10), nullable=True)
    role = db.Column(db.String(20), nullable=False, default='trainee')
    activated = db.Column(db.Boolean, nullable=False, default=True)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    confirmation_sent_at = db.Column(db.DateTime, nullable=True)
    image = db.Column(db.String(255), nullable=True)  # path under UPLOAD_FOLDER
    # Set for accounts created through an OAuth provider
    provider = db.Column(db.String(50), nullable=True)
    uid = db.Column(db.String(255), nullable=True)

    # Relationships
    user_courses = db.relationship('UserCourse', backref='user', lazy=True, cascade='all, delete-orphan')
    course_supervisors = db.relationship('CourseSupervisor', backref='user', lazy=True, cascade='all, delete-orphan')
    user_subjects = db.relationship('UserSubject', backref='user', lazy=True, cascade='all, delete-orphan')
    user_tasks = db.relationship('UserTask', backref='user', lazy=True, cascade='all, delete-orphan')
    daily_reports = db.relationship('DailyReport', backref='user', lazy=True, cascade='all, delete-orphan')
    comments = db.relationship('Comment', backref='user', lazy=True, cascade='all, delete-orphan')
    created_courses = db.relationship('Course', backref='creator', lazy=True)
    courses = db.relationship('Course', secondary='user_course', viewonly=True, lazy=True)
    supervised_courses = db.relationship('Course', secondary='course_supervisor', viewonly=True, lazy=True)

    @classmethod
    def from_oauth(cls, provider, uid, email, name):
        """
        A confirmed trainee for a first OAuth sign-in. Birthday and gender
        stay empty, so validate it with ``require_profile=False``.
        """
        user = cls(provider=provider, uid=uid, email=(email or '').strip().lower(),
                   name=(name or email or '').strip()[:USER_MAX_NAME_LENGTH], role='trainee', activated=True)
        user.set_password(secrets.token_urlsafe(15))
        user.confirm()
        return user

    def set_password(self, password):
        """Hashes the given password and stores it."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Checks if the given password matches the stored hash."""
        return check_password_hash(self.password_hash, password)

    @property
    def is_active(self):
        return bool(self.activated)

    @property
    def confirmed(self):
        return self.confirmed_at is not None

    def confirm(self):
        self.confirmed_at = utcnow()

    def can_sign_in(self):
        return self.confirmed and self.is_active

    @property
    def is_trainee(self):
        return self.role == 'trainee'

    @property
    def is_supervisor(self):
        return self.role == 'supervisor'

    @property
    def is_admin(self):
        return self.role == 'admin'

    @property
    def course_ids(self):
        rows = db.session.query(UserCourse.course_id).filter(UserCourse.user_id == self.id).all()
        return [row[0] for row in rows]

    @property
    def supervised_course_ids(self):
        rows = db.session.query(CourseSupervisor.course_id).filter(CourseSupervisor.user_id == self.id).all()
        return [row[0] for row in rows]

    def validate(self, require_profile=True):
        errors = {}
        _check_text(errors, 'name', self.name, USER_MAX_NAME_LENGTH)

        email = (self.email or '').strip()
        if not email:
            _add_error(errors, 'email', "can't be blank")
        elif len(email) > USER_MAX_EMAIL_LENGTH:
            _add_error(errors, 'email', f'is too long (maximum is {USER_MAX_EMAIL_LENGTH} characters)')
        elif not VALID_EMAIL_REGEX.match(email):
            _add_error(errors, 'email', 'is invalid')
        else:
            with db.session.no_autoflush:
                taken = User.query.filter(func.lower(User.email) == email.lower())
                if self.id is not None:
                    taken = taken.filter(User.id != self.id)
                if taken.first() is not None:
                    _add_error(errors, 'email', 'has already been taken')

        if require_profile:
            if self.birthday is None:
                _add_error(errors, 'birthday', "can't be blank")
            else:
                today = date.today()
                try:
                    min_date = today.replace(year=today.year - USER_BIRTHDAY_VALID_YEARS)
                except ValueError:  # Feb 29
                    min_date = today.replace(year=today.year - USER_BIRTHDAY_VALID_YEARS, day=28)
                if not (min_date <= self.birthday <= today):
                    _add_error(errors, 'birthday', f'must be within the last {USER_BIRTHDAY_VALID_YEARS} years')
            if self.gender not in GENDERS:
                _add_error(errors, 'gender', "can't be blank" if not self.gender else 'is not included in the list')

        if self.role not in ROLES:
            _add_error(errors, 'role', 'is not included in the list')
        return errors

    def __repr__(self):
        return f'<User {self.email} ({self.role})>'


@event.listens_for(User, 'before_insert')
@event.listens_for(User, 'before_update')
def _downcase_email(mapper, connection, target):
    if target.email:
        target.email = target.email.strip().lower()


# --- Courses ---

class CourseQuery(db.Query):
    def by_status(self, status):
        if not status or status not in COURSE_STATUSES:
            return self
        return self.filter(Course.status == status)

    def ordered_by_start_date(self):
        return self.order_by(Course.start_date.desc(), Course.id.desc())

    def search_by_name(self, search):
        if not search:
            return self
        return self.filter(func.lower(Course.name).like(f'%{search.strip().lower()}%'))

    def supervised_by(self, user_id):
        course_ids = db.session.query(CourseSupervisor.course_id).filter(CourseSupervisor.user_id == user_id)
        return self.filter(Course.id.in_(course_ids))

    def joined_by(self, user_id):
        course_ids = db.session.query(UserCourse.course_id).filter(UserCourse.user_id == user_id)
        return self.filter(Course.id.in_(course_ids))


class Course(TimestampMixin, ValidationMixin, db.Model):
    """
    A course groups an ordered list of subjects, the trainees enrolled in it
    and the supervisors running it.
    """
    query_class = CourseQuery

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(COURSE_MAX_NAME_LENGTH), nullable=False)
    link_to_course = db.Column(db.String(255), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    finish_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='not_started')
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)  # Supervisor who created it
    image = db.Column(db.String(255), nullable=True)  # path under UPLOAD_FOLDER

    user_courses = db.relationship('UserCourse', backref='course', lazy=True, cascade='all, delete-orphan')
    course_supervisors = db.relationship('CourseSupervisor', backref='course', lazy=True, cascade='all, delete-orphan')
    course_subjects = db.relationship('CourseSubject', backref='course', lazy=True, cascade='all, delete-orphan',
                                      order_by='CourseSubject.position')
    daily_reports = db.relationship('DailyReport', backref='course', lazy=True, cascade='all, delete-orphan')
    users = db.relationship('User', secondary='user_course', viewonly=True, lazy=True)
    supervisors = db.relationship('User', secondary='course_supervisor', viewonly=True, lazy=True)

    def is_supervised_by(self, user):
        if user is None or self.id is None:
            return False
        return db.session.query(CourseSupervisor.id).filter_by(course_id=self.id, user_id=user.id).first() is not None

    def has_member(self, user):
        if user is None or self.id is None:
            return False
        return db.session.query(UserCourse.id).filter_by(course_id=self.id, user_id=user.id).first() is not None

    @property
    def active_course_subjects(self):
        """Course subjects whose subject has not been deleted, in course order."""
        if self.id is None:
            return []
        return (CourseSubject.query.join(Subject, CourseSubject.subject_id == Subject.id)
                .filter(CourseSubject.course_id == self.id, Subject.deleted_at.is_(None))
                .order_by(CourseSubject.position.asc()).all())

    def next_subject_position(self):
        current = db.session.query(func.max(CourseSubject.position)).filter(CourseSubject.course_id == self.id).scalar()
        return (current or 0) + 1

    def validate(self):
        errors = {}
        _check_text(errors, 'name', self.name, COURSE_MAX_NAME_LENGTH)
        _check_text(errors, 'link_to_course', self.link_to_course, 255, required=False)
        if self.start_date is None:
            _add_error(errors, 'start_date', "can't be blank")
        if self.finish_date is None:
            _add_error(errors, 'finish_date', "can't be blank")
        if self.start_date and self.finish_date and self.finish_date <= self.start_date:
            _add_error(errors, 'finish_date', 'must be after start date')
        if self.status not in COURSE_STATUSES:
            _add_error(errors, 'status', 'is not included in the list')
        return errors

    def __repr__(self):
        return f'<Course {self.name}>'


class CourseSupervisor(TimestampMixin, db.Model):
    __table_args__ = (db.UniqueConstraint('course_id', 'user_id'),)

    id = db.Column(db.Integer, primary_key=True)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)


class UserCourse(TimestampMixin, db.Model):
    """Enrollment of a trainee in a course."""
    __table_args__ = (db.UniqueConstraint('user_id', 'course_id'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='not_started')
    joined_at = db.Column(db.DateTime, default=utcnow)

    user_subjects = db.relationship('UserSubject', backref='user_course', lazy=True, cascade='all, delete-orphan')

    @property
    def comments(self):
        return Comment.query.for_commentable(self).recent().all()


# --- Learning structure ---

class Category(TimestampMixin, ValidationMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(CATEGORY_MAX_NAME_LENGTH), nullable=False, unique=True)

    subject_categories = db.relationship('SubjectCategory', backref='category', lazy=True, cascade='all, delete-orphan')

    def validate(self):
        errors = {}
        _check_text(errors, 'name', self.name, CATEGORY_MAX_NAME_LENGTH)
        if 'name' not in errors:
            with db.session.no_autoflush:
                taken = Category.query.filter(func.lower(Category.name) == self.name.strip().lower())
                if self.id is not None:
                    taken = taken.filter(Category.id != self.id)
                if taken.first() is not None:
                    _add_error(errors, 'name', 'has already been taken')
        return errors

    def __repr__(self):
        return f'<Category {self.name}>'


class SubjectCategory(TimestampMixin, db.Model):
    __table_args__ = (db.UniqueConstraint('subject_id', 'category_id'),)

    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'), nullable=False, index=True)


class SubjectQuery(SoftDeleteQuery):
    def search_by_name(self, search):
        if not search:
            return self
        return self.filter(func.lower(Subject.name).like(f'%{search.strip().lower()}%'))

    def ordered_by_name(self):
        return self.order_by(Subject.name.asc())

    def recent(self):
        return self.order_by(Subject.created_at.desc(), Subject.id.desc())


class Subject(SoftDeleteMixin, TimestampMixin, ValidationMixin, db.Model):
    """Reusable unit of learning content; placed into courses through CourseSubject."""
    query_class = SubjectQuery

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(SUBJECT_MAX_NAME_LENGTH), nullable=False)
    description = db.Column(db.Text, nullable=True)
    max_score = db.Column(db.Integer, nullable=False)
    estimated_time_days = db.Column(db.Integer, nullable=False)

    course_subjects = db.relationship('CourseSubject', backref='subject', lazy=True)
    subject_categories = db.relationship('SubjectCategory', backref='subject', lazy=True, cascade='all, delete-orphan')
    categories = db.relationship('Category', secondary='subject_category', viewonly=True, lazy=True)
    courses = db.relationship('Course', secondary='course_subject', viewonly=True, lazy=True)

    def task_query(self):
        return Task.query.for_taskable(self).not_deleted().order_by(Task.id.asc())

    @property
    def tasks(self):
        return self.task_query().all()

    def add_task(self, name, description=None):
        task = Task(name=name, description=description, taskable_type='Subject', taskable_id=self.id)
        db.session.add(task)
        return task

    def soft_delete(self):
        """Hides the subject and its tasks; category links are removed outright."""
        super().soft_delete()
        for task in self.task_query():
            task.soft_delete()
        for subject_category in list(self.subject_categories):
            db.session.delete(subject_category)

    def validate(self):
        errors = {}
        _check_text(errors, 'name', self.name, SUBJECT_MAX_NAME_LENGTH)
        if 'name' not in errors:
            with db.session.no_autoflush:
                taken = Subject.query.not_deleted().filter(func.lower(Subject.name) == self.name.strip().lower())
                if self.id is not None:
                    taken = taken.filter(Subject.id != self.id)
                if taken.first() is not None:
                    _add_error(errors, 'name', 'has already been taken')
        _check_integer(errors, 'max_score', self.max_score, greater_than=0,
                       less_than_or_equal_to=SUBJECT_MAX_SCORE_LIMIT)
        _check_integer(errors, 'estimated_time_days', self.estimated_time_days, greater_than=0)
        return errors

    def __repr__(self):
        return f'<Subject {self.name}>'


class CourseSubject(TimestampMixin, db.Model):
    """A subject scheduled inside a course, with its own copy of the tasks."""
    __table_args__ = (db.UniqueConstraint('course_id', 'subject_id'),)

    id = db.Column(db.Integer, primary_key=True)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False, index=True)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=1)
    start_date = db.Column(db.Date, nullable=True)
    finish_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='not_started')

    user_subjects = db.relationship('UserSubject', backref='course_subject', lazy=True, cascade='all, delete-orphan')

    def task_query(self):
        return Task.query.for_taskable(self).not_deleted().order_by(Task.id.asc())

    @property
    def tasks(self):
        return self.task_query().all()

    def add_task(self, name, description=None):
        task = Task(name=name, description=description, taskable_type='CourseSubject', taskable_id=self.id)
        db.session.add(task)
        return task

    def copy_subject_tasks(self):
        """Copies the live tasks of the underlying subject into this course subject."""
        return [self.add_task(task.name, task.description) for task in self.subject.task_query()]

    def finish(self):
        self.status = 'finished'
        self.finish_date = date.today()


class TaskQuery(SoftDeleteQuery):
    def for_taskable(self, taskable):
        return self.filter(Task.taskable_type == type(taskable).__name__, Task.taskable_id == taskable.id)

    def for_taskable_type(self, taskable_type):
        return self.filter(Task.taskable_type == taskable_type)

    def by_subject(self, subject_id):
        if not subject_id:
            return self
        return self.filter(Task.taskable_type == 'Subject', Task.taskable_id == subject_id)

    def search_by_name(self, search):
        if not search:
            return self
        return self.filter(func.lower(Task.name).like(f'%{search.strip().lower()}%'))

    def recent(self):
        return self.order_by(Task.created_at.desc(), Task.id.desc())


class Task(SoftDeleteMixin, TimestampMixin, ValidationMixin, db.Model):
    """
    A task belongs either to a Subject (template) or to a CourseSubject
    (the copy trainees actually work on), see ``taskable_type``.
    """
    query_class = TaskQuery

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(TASK_MAX_NAME_LENGTH), nullable=False)
    description = db.Column(db.Text, nullable=True)
    taskable_type = db.Column(db.String(20), nullable=False)
    taskable_id = db.Column(db.Integer, nullable=False, index=True)

    user_tasks = db.relationship('UserTask', backref='task', lazy=True, cascade='all, delete-orphan')

    @property
    def taskable(self):
        model = {'Subject': Subject, 'CourseSubject': CourseSubject}.get(self.taskable_type)
        if model is None or self.taskable_id is None:
            return None
        return db.session.get(model, self.taskable_id)

    def validate(self):
        errors = {}
        _check_text(errors, 'name', self.name, TASK_MAX_NAME_LENGTH)
        if self.taskable_type not in TASKABLE_TYPES:
            _add_error(errors, 'taskable_type', 'is not included in the list')
        elif self.taskable is None:
            _add_error(errors, 'taskable', 'must exist')
        return errors

    def __repr__(self):
        return f'<Task {self.name} ({self.taskable_type} {self.taskable_id})>'


# --- Progress ---

class UserSubject(TimestampMixin, ValidationMixin, db.Model):
    """A trainee's progress through one course subject."""
    __table_args__ = (db.UniqueConstraint('user_id', 'course_subject_id'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    user_course_id = db.Column(db.Integer, db.ForeignKey('user_course.id'), nullable=False, index=True)
    course_subject_id = db.Column(db.Integer, db.ForeignKey('course_subject.id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='not_started')
    score = db.Column(db.Integer, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    user_tasks = db.relationship('UserTask', backref='user_subject', lazy=True, cascade='all, delete-orphan')

    @property
    def course(self):
        return self.course_subject.course if self.course_subject else None

    @property
    def comments(self):
        return Comment.query.for_commentable(self).recent().all()

    def start(self):
        self.status = 'in_progress'
        self.started_at = self.started_at or utcnow()

    def finish(self):
        self.status = 'finished'
        self.started_at = self.started_at or utcnow()
        self.completed_at = utcnow()

    def validate(self):
        errors = {}
        if self.status not in USER_SUBJECT_STATUSES:
            _add_error(errors, 'status', 'is not included in the list')
        if self.score is not None:
            with db.session.no_autoflush:
                max_score = self.course_subject.subject.max_score if self.course_subject else SUBJECT_MAX_SCORE_LIMIT
            if isinstance(self.score, bool) or not isinstance(self.score, (int, float)):
                _add_error(errors, 'score', 'is not a number')
            elif isinstance(self.score, float) and not self.score.is_integer():
                _add_error(errors, 'score', 'must be an integer')
            elif self.score < 0:
                _add_error(errors, 'score', 'must be greater than or equal to 0')
            elif self.score > max_score:
                _add_error(errors, 'score', f'must be less than or equal to {max_score}')
        return errors


class UserTask(TimestampMixin, ValidationMixin, db.Model):
    __table_args__ = (db.UniqueConstraint('user_subject_id', 'task_id'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    user_subject_id = db.Column(db.Integer, db.ForeignKey('user_subject.id'), nullable=False, index=True)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='not_done')
    spent_time = db.Column(db.Float, nullable=False, default=0)  # hours
    document = db.Column(db.String(255), nullable=True)  # stored filename under UPLOAD_FOLDER

    def validate(self):
        errors = {}
        if self.status not in USER_TASK_STATUSES:
            _add_error(errors, 'status', 'is not included in the list')
        if self.spent_time is None or isinstance(self.spent_time, bool) \
                or not isinstance(self.spent_time, (int, float)):
            _add_error(errors, 'spent_time', 'is not a number')
        elif self.spent_time < 0:
            _add_error(errors, 'spent_time', 'must be greater than or equal to 0')
        return errors


# --- Reports & comments ---

class DailyReportQuery(db.Query):
    def by_course(self, course_id):
        if not course_id:
            return self
        return self.filter(DailyReport.course_id == course_id)

    def by_user(self, user_id):
        if not user_id:
            return self
        return self.filter(DailyReport.user_id == user_id)

    def on_date(self, day):
        if day is None:
            return self
        return self.filter(func.date(DailyReport.created_at) == day.isoformat())

    def submitted(self):
        return self.filter(DailyReport.status == 'submitted')

    def recent(self):
        return self.order_by(DailyReport.created_at.desc(), DailyReport.id.desc())


class DailyReport(TimestampMixin, ValidationMixin, db.Model):
    query_class = DailyReportQuery

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False, index=True)
    content = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='draft')
    submitted_at = db.Column(db.DateTime, nullable=True)

    @property
    def is_submitted(self):
        return self.status == 'submitted'

    def submit(self):
        self.status = 'submitted'
        self.submitted_at = utcnow()

    def validate(self):
        errors = {}
        _check_text(errors, 'content', self.content, DAILY_REPORT_MAX_CONTENT_LENGTH)
        if not self.course_id:
            _add_error(errors, 'course', "can't be blank")
        if self.status not in DAILY_REPORT_STATUSES:
            _add_error(errors, 'status', 'is not included in the list')
        return errors


class CommentQuery(db.Query):
    def for_commentable(self, commentable):
        return self.filter(Comment.commentable_type == type(commentable).__name__,
                           Comment.commentable_id == commentable.id)

    def recent(self):
        return self.order_by(Comment.created_at.desc(), Comment.id.desc())


class Comment(TimestampMixin, ValidationMixin, db.Model):
    """A message attached to a UserCourse or a UserSubject."""
    query_class = CommentQuery

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    commentable_type = db.Column(db.String(20), nullable=False)
    commentable_id = db.Column(db.Integer, nullable=False, index=True)
    content = db.Column(db.Text, nullable=False)

    @property
    def commentable(self):
        model = {'UserCourse': UserCourse, 'UserSubject': UserSubject}.get(self.commentable_type)
        if model is None or self.commentable_id is None:
            return None
        return db.session.get(model, self.commentable_id)

    @commentable.setter
    def commentable(self, value):
        self.commentable_type = type(value).__name__
        self.commentable_id = value.id

    def validate(self):
        errors = {}
        _check_text(errors, 'content', self.content, COMMENT_MAX_CONTENT_LENGTH)
        if self.commentable_type not in COMMENTABLE_TYPES:
            _add_error(errors, 'commentable_type', 'is not included in the list')
        return errors


def _delete_comments_of(connection, commentable_type, commentable_id):
    connection.execute(
        Comment.__table__.delete().where(
            Comment.__table__.c.commentable_type == commentable_type,
            Comment.__table__.c.commentable_id == commentable_id,
        )
    )


@event.listens_for(UserCourse, 'after_delete')
def _delete_user_course_comments(mapper, connection, target):
    _delete_comments_of(connection, 'UserCourse', target.id)


@event.listens_for(UserSubject, 'after_delete')
def _delete_user_subject_comments(mapper, connection, target):
    _delete_comments_of(connection, 'UserSubject', target.id)
