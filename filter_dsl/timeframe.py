"""
Relative timeframe resolution.

Turns operator timeframes such as ``12h``, ``7d`` or ``week`` into durations
and into the range clause that bounds a search to the window ending at a
reference time.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .models import TimeframeError

KEYWORD_DURATIONS = {
    'week': timedelta(days=7),
    'month': timedelta(days=30),
    'quarter': timedelta(days=90),
    'year': timedelta(days=365),
}
KEYWORDS = ('today',) + tuple(KEYWORD_DURATIONS)

UNIT_DURATIONS = {
    'h': timedelta(hours=1),
    'd': timedelta(days=1),
    'w': timedelta(weeks=1),
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_DIGITS = re.compile(r'[0-9]+')


def validate_timeframe(timeframe: str) -> None:
    """Check that a timeframe string is well formed.

    Args:
        timeframe: Keyword (today, week, month, quarter, year) or a positive
            integer followed by h, d or w

    Raises:
        TimeframeError: If the timeframe is empty or malformed
    """
    value = (timeframe or '').strip().lower()
    if not value:
        raise TimeframeError("timeframe cannot be empty")

    if value in KEYWORDS:
        return

    for keyword in KEYWORDS:
        if value.startswith(keyword):
            raise TimeframeError(
                f"invalid timeframe '{timeframe.strip()}': did you mean '{keyword}'?"
            )

    if len(value) < 2:
        raise TimeframeError(f"invalid timeframe format: {value}")

    number, unit = value[:-1], value[-1]
    if unit not in UNIT_DURATIONS:
        raise TimeframeError(f"invalid timeframe unit: {unit} (supported: h,d,w)")

    if not _DIGITS.fullmatch(number):
        raise TimeframeError(f"invalid timeframe number: {value}")

    if int(number) <= 0:
        raise TimeframeError(f"timeframe must be positive: {value}")


def parse_timeframe(timeframe: str, now: Optional[datetime] = None) -> timedelta:
    """Convert a timeframe string to a duration.

    ``today`` resolves to the time elapsed since midnight of ``now`` in its
    own timezone, or of the local wall clock when ``now`` is omitted.

    Args:
        timeframe: Timeframe expression
        now: Optional reference time used by ``today``

    Returns:
        The duration covered by the timeframe

    Raises:
        TimeframeError: If the timeframe cannot be parsed
    """
    value = (timeframe or '').strip().lower()
    if not value:
        raise TimeframeError("empty timeframe")

    if value == 'today':
        reference = now if now is not None else datetime.now().astimezone()
        midnight = reference.replace(hour=0, minute=0, second=0, microsecond=0)
        return reference - midnight

    if value in KEYWORD_DURATIONS:
        return KEYWORD_DURATIONS[value]

    if len(value) < 2:
        raise TimeframeError(f"invalid timeframe format: {value}")

    number, unit = value[:-1], value[-1]
    if not _DIGITS.fullmatch(number):
        raise TimeframeError(f"invalid timeframe number: {value}")

    if unit not in UNIT_DURATIONS:
        raise TimeframeError(f"invalid timeframe unit: {unit} (supported: h,d,w)")

    try:
        return int(number) * UNIT_DURATIONS[unit]
    except OverflowError:
        raise TimeframeError(f"timeframe too large: {value}")


def epoch_seconds(moment: datetime) -> int:
    """Whole seconds since the Unix epoch; naive datetimes are local time."""
    return (_aware(moment) - _EPOCH) // timedelta(seconds=1)


def epoch_millis(moment: datetime) -> int:
    """Whole milliseconds since the Unix epoch; naive datetimes are local time."""
    return (_aware(moment) - _EPOCH) // timedelta(milliseconds=1)


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.astimezone()
    return moment


def build_time_query(timeframe: str, now: datetime) -> Optional[Dict[str, Any]]:
    """Build the range clause for a timeframe ending at ``now``.

    Detections carry their time either as ``unixTime`` in seconds or as
    ``detectionGeneratedTime`` in milliseconds, so the clause matches
    either one.

    Args:
        timeframe: Timeframe expression, may be empty
        now: End of the window

    Returns:
        A bool/should clause, or None for an empty timeframe

    Raises:
        TimeframeError: If the timeframe is invalid
    """
    if not timeframe:
        return None

    validate_timeframe(timeframe)
    duration = parse_timeframe(timeframe, now)

    now_seconds = epoch_seconds(now)
    now_millis = epoch_millis(now)

    return {
        'bool': {
            'should': [
                {
                    'range': {
                        'unixTime': {
                            'gte': now_seconds - int(duration.total_seconds()),
                            'lte': now_seconds,
                        },
                    },
                },
                {
                    'range': {
                        'detectionGeneratedTime': {
                            'gte': now_millis - duration // timedelta(milliseconds=1),
                            'lte': now_millis,
                        },
                    },
                },
            ],
            'minimum_should_match': 1,
        },
    }
