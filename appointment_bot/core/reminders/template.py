"""Reminder template keys, target-day spans and message rendering."""

import re
from datetime import datetime, time, timedelta, tzinfo
from typing import Mapping

_PLACEHOLDER = re.compile(r"{{\s*(\w+)\s*}}")


def build_template_key(days_before: int, hour: int, minute: int, prefix: str = "reminder") -> str:
    """
    Key identifying one reminder schedule, e.g. "reminder_d1_h9m0".

    A schedule change yields a new key, so its idempotency history starts fresh.
    """
    return f"{prefix}_d{days_before}_h{hour}m{minute}"


def target_day_span(now: datetime, days_before: int, tz: tzinfo) -> tuple[datetime, datetime]:
    """
    Full local day `days_before` days after now's local day.

    Returns:
        (start, end) as aware datetimes, end exclusive (next local midnight)
    """
    day = now.astimezone(tz).date() + timedelta(days=days_before)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def render_template(template: str, values: Mapping[str, str]) -> str:
    """Substitute {{placeholders}}; unknown placeholders render empty."""
    rendered = _PLACEHOLDER.sub(lambda m: str(values.get(m.group(1).lower(), "") or ""), template)
    return re.sub(r"[ \t]{2,}", " ", rendered).strip()
