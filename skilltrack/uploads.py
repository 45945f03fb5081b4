"""Files stored under ``UPLOAD_FOLDER``, addressed by paths relative to it."""
import os
import uuid

from flask import current_app, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.utils import secure_filename

from .constants import ALLOWED_IMAGE_EXTENSIONS
from .extensions import db


def allowed_file(filename, extensions):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in extensions


def save_upload(upload, relative_dir):
    """Saves ``upload`` under ``relative_dir`` with a random prefix and returns its relative path."""
    os.makedirs(os.path.join(current_app.config['UPLOAD_FOLDER'], relative_dir), exist_ok=True)
    stored_name = f"{uuid.uuid4().hex[:8]}_{secure_filename(upload.filename)}"
    relative_path = os.path.join(relative_dir, stored_name)
    upload.save(os.path.join(current_app.config['UPLOAD_FOLDER'], relative_path))
    return relative_path


def remove_upload(relative_path):
    if not relative_path:
        return
    path = os.path.join(current_app.config['UPLOAD_FOLDER'], relative_path)
    try:
        os.remove(path)
    except FileNotFoundError:
        current_app.logger.warning("Upload already missing on disk: %s", path)


def replace_upload(owner, attribute, upload, relative_dir, log_label):
    """
    Stores ``upload`` as ``owner.<attribute>`` and commits.

    The previous file is removed only once the new path is committed. When
    the commit fails the session is rolled back and the new file is removed,
    so the stored path always points at a file on disk.
    Returns True on success.
    """
    previous = getattr(owner, attribute)
    relative_path = save_upload(upload, relative_dir)
    setattr(owner, attribute, relative_path)
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        remove_upload(relative_path)
        current_app.logger.error(f"{log_label}: {e}")
        return False
    remove_upload(previous)
    return True


def chosen_file(field):
    """The uploaded file for ``field``, or None when the input was left empty."""
    upload = request.files.get(field)
    if upload is None or not upload.filename:
        return None
    return upload


def image_errors(upload, field='image'):
    if upload is None or allowed_file(upload.filename, ALLOWED_IMAGE_EXTENSIONS):
        return {}
    extensions = ', '.join(sorted(extension.upper() for extension in ALLOWED_IMAGE_EXTENSIONS))
    return {field: [f'must be one of these file types: {extensions}']}


def image_dir(owner):
    return os.path.join('images', f'{type(owner).__name__.lower()}s', str(owner.id))


def commit_with_image(owner, upload, log_label):
    """Commits pending changes, storing ``upload`` as ``owner.image`` first when one was chosen."""
    if upload is not None:
        return replace_upload(owner, 'image', upload, image_dir(owner), log_label)
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"{log_label}: {e}")
        return False
    return True
