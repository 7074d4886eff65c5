"""
Notification Preference Store

Adapter over the notification_preference table:
- read(client_id): always returns a preference (defaults when none stored)
- write(client_id, partial): validated upsert of a partial update

Also hosts the quiet-hours arithmetic, since it only depends on a preference.
Quiet hours are evaluated in the client's local timezone and may wrap
midnight (22:00 -> 08:00).
"""

import logging
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from core.logging import engagement_context
from services.engagement.errors import DataUnavailableError, PreferenceValidationError
from services.engagement.types import NotificationPreference, ReminderFrequency

logger = logging.getLogger(__name__)

MAX_DAILY_LIMIT = 50

# Domain field -> ORM column
_COLUMN_MAP = {
    "sms": "sms_enabled",
    "web_push": "web_push_enabled",
    "in_app": "in_app_enabled",
    "frequency": "frequency",
    "daily_limit": "daily_limit",
    "quiet_hours_enabled": "quiet_hours_enabled",
    "quiet_hours_start": "quiet_hours_start",
    "quiet_hours_end": "quiet_hours_end",
    "timezone": "timezone",
}


def default_preference(client_id: str) -> NotificationPreference:
    return NotificationPreference(client_id=client_id)


def parse_time_of_day(value: Any, field: str) -> time:
    """Accept datetime.time or an "HH:MM" string."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    if isinstance(value, str):
        parts = value.strip().split(":")
        if len(parts) == 2 and all(p.isdigit() for p in parts):
            hour, minute = int(parts[0]), int(parts[1])
            if 0 <= hour <= 23 and 0 <= minute <= 59:
                return time(hour, minute)
    raise PreferenceValidationError(field, f"{field} must be a time of day in HH:MM format")


def format_time_of_day(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def resolve_timezone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def validate_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    clean: Dict[str, Any] = {}
    for key, value in changes.items():
        if key not in _COLUMN_MAP:
            raise PreferenceValidationError(key, f"Unknown preference field: {key}")
        if value is None:
            continue
        if key in ("sms", "web_push", "in_app", "quiet_hours_enabled"):
            if not isinstance(value, bool):
                raise PreferenceValidationError(key, f"{key} must be a boolean")
            clean[key] = value
        elif key == "frequency":
            try:
                clean[key] = ReminderFrequency(value)
            except ValueError:
                allowed = ", ".join(f.value for f in ReminderFrequency)
                raise PreferenceValidationError(key, f"frequency must be one of: {allowed}")
        elif key == "daily_limit":
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_DAILY_LIMIT:
                raise PreferenceValidationError(key, f"daily_limit must be an integer between 0 and {MAX_DAILY_LIMIT}")
            clean[key] = value
        elif key in ("quiet_hours_start", "quiet_hours_end"):
            clean[key] = parse_time_of_day(value, key)
        elif key == "timezone":
            try:
                resolve_timezone(value)
            except (ZoneInfoNotFoundError, ValueError):
                raise PreferenceValidationError(key, f"Unknown timezone: {value}")
            clean[key] = value
    return clean


def _to_domain(row: "models.NotificationPreference") -> NotificationPreference:
    return NotificationPreference(
        client_id=row.client_id,
        sms=bool(row.sms_enabled),
        web_push=bool(row.web_push_enabled),
        in_app=bool(row.in_app_enabled),
        frequency=ReminderFrequency(row.frequency),
        daily_limit=int(row.daily_limit),
        quiet_hours_enabled=bool(row.quiet_hours_enabled),
        quiet_hours_start=parse_time_of_day(row.quiet_hours_start, "quiet_hours_start"),
        quiet_hours_end=parse_time_of_day(row.quiet_hours_end, "quiet_hours_end"),
        timezone=row.timezone or "UTC",
    )


class PreferenceStore:
    """Read/write access to per-client notification preferences."""

    def __init__(self, db: Session):
        self.db = db

    def read(self, client_id: str) -> NotificationPreference:
        """
        Return the stored preference, or the defaults when none exists.

        Raises DataUnavailableError when the store cannot be read.
        """
        try:
            row = self.db.get(models.NotificationPreference, client_id)
        except SQLAlchemyError as e:
            logger.error(f"Preference read failed for client {client_id}: {e}")
            raise DataUnavailableError("notification preferences", client_id, e) from e

        if row is None:
            return default_preference(client_id)
        return _to_domain(row)

    def write(self, client_id: str, changes: Mapping[str, Any]) -> NotificationPreference:
        """
        Upsert a partial update and return the merged preference.

        Fields set to None are left unchanged. Quiet-hours times are kept
        even while quiet hours are disabled so re-enabling restores them.
        """
        clean = validate_changes(dict(changes))
        try:
            row = self.db.get(models.NotificationPreference, client_id)
            merged = (_to_domain(row) if row is not None else default_preference(client_id)).merged(**clean)
            if row is None:
                row = models.NotificationPreference(client_id=client_id)
                self.db.add(row)
            row.sms_enabled = merged.sms
            row.web_push_enabled = merged.web_push
            row.in_app_enabled = merged.in_app
            row.frequency = merged.frequency.value
            row.daily_limit = merged.daily_limit
            row.quiet_hours_enabled = merged.quiet_hours_enabled
            row.quiet_hours_start = format_time_of_day(merged.quiet_hours_start)
            row.quiet_hours_end = format_time_of_day(merged.quiet_hours_end)
            row.timezone = merged.timezone
            self.db.flush()
        except SQLAlchemyError as e:
            logger.error(f"Preference write failed for client {client_id}: {e}")
            raise DataUnavailableError("notification preferences", client_id, e) from e

        logger.info(
            f"Notification preferences updated for client {client_id}",
            extra=engagement_context(client_id, fields=sorted(clean)),
        )
        return merged


def _local_now(preference: NotificationPreference, now: datetime) -> datetime:
    try:
        tz = resolve_timezone(preference.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Invalid timezone '{preference.timezone}' for client {preference.client_id}, using UTC")
        tz = timezone.utc
    return now.astimezone(tz)


def is_within_quiet_hours(preference: NotificationPreference, now: datetime) -> bool:
    """
    True when quiet hours are enabled and local `now` is in [start, end).

    A window whose start equals its end is empty.
    """
    if not preference.quiet_hours_enabled:
        return False

    start, end = preference.quiet_hours_start, preference.quiet_hours_end
    if start == end:
        return False

    current = _local_now(preference, now).time().replace(tzinfo=None)
    if start < end:
        return start <= current < end
    # Wraps midnight
    return current >= start or current < end


def quiet_hours_end_after(preference: NotificationPreference, now: datetime) -> datetime:
    """Next moment (UTC) at which the quiet window ends."""
    local = _local_now(preference, now)
    end = preference.quiet_hours_end
    candidate = local.replace(hour=end.hour, minute=end.minute, second=0, microsecond=0)
    if candidate <= local:
        candidate += timedelta(days=1)
    return candidate.astimezone(timezone.utc)
