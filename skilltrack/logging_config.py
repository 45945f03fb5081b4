"""Logging for the web process. Records logged during a request carry its method, path and user."""
import logging
from logging.config import dictConfig

from flask import has_request_context, request, session
from flask.logging import default_handler

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(method)s %(path)s user=%(user_id)s: %(message)s"


class RequestContextFilter(logging.Filter):
    """Adds ``method``, ``path`` and ``user_id`` to every record, '-' outside a request."""

    def filter(self, record):
        if has_request_context():
            record.method = request.method
            record.path = request.path
            # Read the session rather than current_user so logging never hits the database
            record.user_id = session.get('_user_id', '-')
        else:
            record.method = record.path = record.user_id = '-'
        return True


def configure_logging(app):
    """Routes the root logger and ``app.logger`` through one handler on the WSGI error stream."""
    level = app.config['LOG_LEVEL']
    dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'filters': {
            'request_context': {'()': RequestContextFilter},
        },
        'formatters': {
            'default': {'format': LOG_FORMAT},
        },
        'handlers': {
            'wsgi': {
                'class': 'logging.StreamHandler',
                'stream': 'ext://flask.logging.wsgi_errors_stream',
                'formatter': 'default',
                'filters': ['request_context'],
            },
        },
        'root': {
            'handlers': ['wsgi'],
            'level': level,
        },
    })
    app.logger.removeHandler(default_handler)
    app.logger.setLevel(level)

    if app.config['LOG_SQL']:
        logging.getLogger('sqlalchemy.engine').setLevel(logging.INFO)
