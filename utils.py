"""Shared date and input helpers for the catalog and circulation layers."""

import math
from datetime import datetime, timedelta, timezone

from errors import ValidationError

PHYSICAL_LOAN_DAYS = 14
DEFAULT_RENEWAL_PERIOD_DAYS = 15


def utcnow():
    """Current UTC time as a naive datetime, the form every column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_days(moment, days):
    return moment + timedelta(days=days)


def renewal_due_date(now, current_due, period_days):
    # Renewing early never shortens access; renewing late restarts from now.
    anchor = max(now, current_due) if current_due else now
    return add_days(anchor, period_days)


def isoformat(value):
    return value.isoformat() if value else None


def parse_int(value):
    """Return ``value`` as an int, or None when it is blank or not numeric."""
    if value is None or value == '' or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def require_text(data, field):
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{field} is required', field=field)
    return value.strip()


def optional_text(value):
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def require_int(value, field, minimum=None):
    number = parse_int(value)
    if number is None:
        raise ValidationError(f'{field} must be a valid number', field=field)
    if minimum is not None and number < minimum:
        raise ValidationError(f'{field} must be at least {minimum}', field=field)
    return number
