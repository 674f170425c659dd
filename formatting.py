# formatting.py
from datetime import datetime

import pytz

BANJUL = pytz.timezone("Africa/Banjul")


def format_gmd(value) -> str:
    """1234.5 -> 'GMD 1,234.50'; non-numeric -> '—'."""
    try:
        return f"GMD {float(value):,.2f}"
    except (TypeError, ValueError):
        return "—"


def format_liters(value) -> str:
    try:
        return f"{float(value):,.2f} L"
    except (TypeError, ValueError):
        return "—"


def banjul_time(value) -> str:
    """
    Render a date/time value as Africa/Banjul local time in 'YYYY-MM-DD HH:MM'.
    Rules:
      - datetimes and ISO strings WITH an offset are converted to Banjul.
      - naive values are treated as UTC (everything is stored in UTC).
      - anything unparseable is shown as-is.
    """
    if not value:
        return "—"

    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return str(value)

    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    return dt.astimezone(BANJUL).strftime("%Y-%m-%d %H:%M")


def banjul_now() -> datetime:
    return datetime.now(BANJUL)
