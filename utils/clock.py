"""
Time helpers. Services take a ``clock`` callable so tests can freeze time.
"""

from datetime import datetime

from dateutil import parser as date_parser
import pytz


def utc_now():
    """Current time as an aware UTC datetime"""
    return datetime.now(pytz.utc)


def to_utc(value):
    """
    Normalise an ISO-8601 string or datetime to an aware UTC datetime.
    Naive values are taken to be UTC already.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = date_parser.isoparse(value)
    if not isinstance(value, datetime):
        raise TypeError(f"Expected datetime or ISO-8601 string, got {type(value).__name__}")
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value.astimezone(pytz.utc)
