"""Helpers turning raw form strings into typed values for the models."""

from datetime import datetime


def to_number(raw):
    """
    Returns an int for integral input, a float for decimal input, None for
    blank input and the stripped string itself when it is not a number, so
    model validation can report it.
    """
    if raw is None:
        return None
    raw = str(raw).strip()
    if raw == '':
        return None
    try:
        number = float(raw)
    except ValueError:
        return raw
    if number.is_integer():
        return int(number)
    return number


def to_date(raw):
    if not raw:
        return None
    try:
        return datetime.strptime(raw.strip(), '%Y-%m-%d').date()
    except ValueError:
        return None


def to_bool(raw):
    """'1'/'true'/'on' -> True, '0'/'false'/'off' -> False, anything else -> None."""
    if raw is None:
        return None
    value = str(raw).strip().lower()
    if value in ('1', 'true', 'on', 'yes', 'active'):
        return True
    if value in ('0', 'false', 'off', 'no', 'inactive'):
        return False
    return None


def to_id_list(values):
    ids = []
    for value in values:
        try:
            ids.append(int(value))
        except (TypeError, ValueError):
            continue
    return ids


def nested_rows(form, prefix):
    """
    Collects Rails-style nested fields, e.g. ``tasks[0][name]``, into a list
    of dicts ordered by their index.
    """
    rows = {}
    start = prefix + '['
    for key in form.keys():
        if not key.startswith(start) or not key.endswith(']'):
            continue
        index, _, field = key[len(start):-1].partition('][')
        if not field:
            continue
        rows.setdefault(index, {})[field] = form.get(key)

    def sort_key(index):
        return (0, int(index)) if index.isdigit() else (1, index)

    return [rows[index] for index in sorted(rows, key=sort_key)]
