import re
from datetime import date, datetime, timezone
from urllib.parse import urlparse

from flask import jsonify

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB


def get_now():
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def get_now_iso():
    return get_now().isoformat()


def api_response(success=True, data=None, error=None, status=200):
    """Standardized JSON response for all API routes."""
    response = {
        'success': success,
        'data': data,
        'error': error
    }
    return jsonify(response), status


def as_text(value, strip=True):
    """Form/JSON scalar to str; None is '' and numbers keep their digits."""
    if value is None:
        return ''
    text = value if isinstance(value, str) else str(value)
    return text.strip() if strip else text


def only_digits(value):
    return re.sub(r'\D', '', as_text(value))


def as_bool(value):
    """Form/JSON flag to bool ('false', '0' and 'off' are False)."""
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'on', 'sim', 'yes')
    return bool(value)


def parse_date(value):
    """ISO date string (or date) to date; None for blank values."""
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


# --- VALIDATORS ---

def is_required(value):
    if value is None:
        return False
    if isinstance(value, str):
        return len(value.strip()) > 0
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def is_valid_email(email):
    return isinstance(email, str) and bool(EMAIL_PATTERN.match(email.strip()))


def is_valid_phone(phone):
    return len(only_digits(phone)) in (10, 11)


def is_valid_url(url):
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


def is_valid_file_size(size, max_size=MAX_FILE_SIZE):
    return size is not None and 0 <= size <= max_size


def is_valid_date_range(start, end):
    if not start or not end:
        return False
    return start <= end
