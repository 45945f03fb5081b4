"""Domain constants shared by models, views and templates."""

ROLES = ('trainee', 'supervisor', 'admin')
GENDERS = ('female', 'male', 'other')

USER_MAX_NAME_LENGTH = 50
USER_MAX_EMAIL_LENGTH = 255
USER_BIRTHDAY_VALID_YEARS = 100
USER_MIN_PASSWORD_LENGTH = 6

COURSE_MAX_NAME_LENGTH = 255
COURSE_STATUSES = ('not_started', 'in_progress', 'finished')

SUBJECT_MAX_NAME_LENGTH = 255
SUBJECT_MAX_SCORE_LIMIT = 100

TASK_MAX_NAME_LENGTH = 255
TASKABLE_TYPES = ('Subject', 'CourseSubject')

CATEGORY_MAX_NAME_LENGTH = 100

USER_COURSE_STATUSES = ('not_started', 'in_progress', 'finished')
COURSE_SUBJECT_STATUSES = ('not_started', 'in_progress', 'finished')
USER_SUBJECT_STATUSES = ('not_started', 'in_progress', 'finished')
USER_TASK_STATUSES = ('not_done', 'done')

DAILY_REPORT_STATUSES = ('draft', 'submitted')
DAILY_REPORT_MAX_CONTENT_LENGTH = 5000

COMMENT_MAX_CONTENT_LENGTH = 1000
COMMENTABLE_TYPES = ('UserCourse', 'UserSubject')

ALLOWED_DOCUMENT_EXTENSIONS = {'pdf', 'doc', 'docx', 'txt', 'md', 'zip', 'png', 'jpg', 'jpeg'}
ALLOWED_IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}

GOOGLE_PROVIDER = 'google_oauth2'
