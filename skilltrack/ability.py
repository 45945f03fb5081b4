"""
Role-based permission table.

An ``Ability`` is built once per request for the signed-in user. Rules are
registered with ``_allow`` / ``_deny`` and looked up latest-first by ``can``:
the first rule whose action and subject match, and whose condition holds,
decides. When no rule matches the answer is no.

Subjects are model classes, model instances or plain namespace names such
as ``'trainee'``. Checking against a class ignores conditions ("may this
user ever read courses?"); checking against an instance evaluates them.
"""

from .models import (
    Category,
    Comment,
    Course,
    CourseSubject,
    DailyReport,
    Subject,
    Task,
    User,
    UserCourse,
    UserSubject,
    UserTask,
)

ACTION_ALIASES = {
    'read': ('index', 'show'),
    'create': ('new',),
    'update': ('edit',),
}


class AccessDenied(Exception):
    """Raised by ``Ability.authorize`` when the user may not perform an action."""

    def __init__(self, action=None, subject=None, message=None):
        self.action = action
        self.subject = subject
        super().__init__(message or 'You do not have permission to access this page.')


def _subject_key(subject):
    if isinstance(subject, str):
        return subject
    if isinstance(subject, type):
        return subject.__name__
    return type(subject).__name__


def _expand_actions(actions):
    expanded = set()
    for action in actions:
        expanded.add(action)
        expanded.update(ACTION_ALIASES.get(action, ()))
    return expanded


class Rule:
    __slots__ = ('allowed', 'actions', 'subjects', 'condition')

    def __init__(self, allowed, actions, subjects, condition=None):
        if isinstance(actions, str):
            actions = (actions,)
        if not isinstance(subjects, (list, tuple)):
            subjects = (subjects,)
        self.allowed = allowed
        self.actions = _expand_actions(actions)
        self.subjects = {_subject_key(subject) for subject in subjects}
        self.condition = condition

    def is_relevant(self, action, subject):
        if 'manage' not in self.actions and action not in self.actions:
            return False
        return 'all' in self.subjects or _subject_key(subject) in self.subjects

    def matches_conditions(self, subject):
        if self.condition is None or isinstance(subject, (str, type)):
            return True
        if callable(self.condition):
            return bool(self.condition(subject))
        return all(getattr(subject, attr, None) == value for attr, value in self.condition.items())


class Ability:
    def __init__(self, user=None):
        self.user = user
        self.rules = []

        if user is None or not getattr(user, 'is_authenticated', False):
            self._deny('manage', 'all')
        elif user.is_trainee:
            self._define_trainee_abilities(user)
            self._allow('access', 'trainee')
        elif user.is_supervisor:
            self._define_supervisor_abilities(user)
            self._allow('access', 'supervisor')
        elif user.is_admin:
            self._allow('manage', 'all')
            self._allow('access', 'admin')
        else:
            self._deny('manage', 'all')

    # --- Public API ---

    def can(self, action, subject):
        for rule in reversed(self.rules):
            if rule.is_relevant(action, subject) and rule.matches_conditions(subject):
                return rule.allowed
        return False

    def cannot(self, action, subject):
        return not self.can(action, subject)

    def authorize(self, action, subject):
        if self.cannot(action, subject):
            raise AccessDenied(action, subject)
        return subject

    # --- Rule registration ---

    def _allow(self, actions, subjects, condition=None):
        self.rules.append(Rule(True, actions, subjects, condition))

    def _deny(self, actions, subjects, condition=None):
        self.rules.append(Rule(False, actions, subjects, condition))

    # --- Trainee ---

    def _define_trainee_abilities(self, current_user):
        self._define_trainee_course_abilities(current_user)
        self._define_trainee_subject_abilities(current_user)
        self._define_trainee_progress_abilities(current_user)
        self._define_trainee_report_abilities(current_user)
        self._define_trainee_comment_abilities(current_user)

    def _define_trainee_course_abilities(self, current_user):
        # Courses the trainee has joined, including the members/subjects pages
        self._allow(('read', 'members', 'subjects'), Course, lambda course: course.has_member(current_user))

    def _define_trainee_subject_abilities(self, current_user):
        def in_joined_course(subject):
            course_ids = current_user.course_ids
            if not course_ids:
                return False
            return CourseSubject.query.filter(
                CourseSubject.subject_id == subject.id,
                CourseSubject.course_id.in_(course_ids),
            ).first() is not None

        self._allow('show', Subject, in_joined_course)

    def _define_trainee_progress_abilities(self, current_user):
        self._allow('read', UserCourse, {'user_id': current_user.id})
        self._allow('update', UserSubject, {'user_id': current_user.id})
        self._allow(('read', 'update'), UserTask, {'user_id': current_user.id})

    def _define_trainee_report_abilities(self, current_user):
        self._allow(('read', 'create', 'update', 'destroy'), DailyReport, {'user_id': current_user.id})

    def _define_trainee_comment_abilities(self, current_user):
        def on_own_progress(comment):
            commentable = comment.commentable
            if isinstance(commentable, (UserCourse, UserSubject)):
                return commentable.user_id == current_user.id
            return False

        self._allow('create', Comment, on_own_progress)
        self._allow('read', Comment, {'user_id': current_user.id})

    # --- Supervisor ---

    def _define_supervisor_abilities(self, current_user):
        self._define_supervisor_course_abilities(current_user)
        self._define_supervisor_user_management_abilities(current_user)
        self._define_supervisor_learning_structure_abilities()

    def _define_supervisor_course_abilities(self, current_user):
        def supervises(course):
            return course is not None and course.is_supervised_by(current_user)

        self._allow('read', Course, supervises)
        self._allow('create', Course)
        self._allow(('update', 'members', 'subjects', 'supervisors', 'leave', 'add_subject'), Course, supervises)
        self._allow('manage', UserCourse, lambda user_course: supervises(user_course.course))
        self._allow('manage', UserSubject, lambda user_subject: supervises(user_subject.course))
        self._allow('manage', UserTask,
                    lambda user_task: user_task.user_subject is not None and supervises(user_task.user_subject.course))
        self._allow('manage', DailyReport, lambda report: supervises(report.course))
        self._allow('manage', CourseSubject, lambda course_subject: supervises(course_subject.course))

        def on_supervised_progress(comment):
            commentable = comment.commentable
            if isinstance(commentable, (UserCourse, UserSubject)):
                return supervises(commentable.course)
            return False

        self._allow('manage', Comment, on_supervised_progress)

    def _define_supervisor_user_management_abilities(self, current_user):
        def shares_supervised_course(user):
            if not user.is_trainee:
                return False
            return bool(set(user.course_ids) & set(current_user.supervised_course_ids))

        self._allow('manage', User, shares_supervised_course)

    def _define_supervisor_learning_structure_abilities(self):
        self._allow('manage', (Subject, Task, Category))
