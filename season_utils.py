# season_utils.py
# Calendar date helpers: date keys (YYYY-MM-DD) and NHL season ids (e.g. 20232024).

import os
import re
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

APP_TIMEZONE = os.getenv("APP_TIMEZONE")
SEASON_START_MONTH = 7  # seasons roll over on July 1

DATE_KEY_REGEX = re.compile(r"^\d{4}-\d{2}-\d{2}$")
SEASON_ID_REGEX = re.compile(r"^\d{8}$")


def parse_date_key(value) -> Optional[date]:
    """Parse a YYYY-MM-DD key into a date, or None if it is not one."""
    if not isinstance(value, str) or not DATE_KEY_REGEX.match(value):
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None


def is_valid_season_id(value) -> bool:
    if value is None or isinstance(value, bool):
        return False
    return bool(SEASON_ID_REGEX.match(str(value)))


def get_season_id_for_date(date_key) -> Optional[str]:
    """
    Map a calendar date to the season id the NHL API expects.

    '2024-06-30' -> '20232024', '2024-07-01' -> '20242025'.
    """
    parsed = parse_date_key(date_key)
    if parsed is None:
        return None
    start_year = parsed.year if parsed.month >= SEASON_START_MONTH else parsed.year - 1
    return f"{start_year}{start_year + 1}"


def _local_zone():
    if not APP_TIMEZONE:
        return None
    try:
        return ZoneInfo(APP_TIMEZONE)
    except Exception:
        return None


def get_today_date_key(now: Optional[datetime] = None) -> str:
    """Today's date key in the server's local date (or APP_TIMEZONE when set)."""
    if now is None:
        zone = _local_zone()
        now = datetime.now(zone) if zone else datetime.now()
    return now.date().isoformat()
