from __future__ import annotations

from datetime import date, datetime, timedelta

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from familyhub.models import DEFAULT_PRODUCT_ID, CalendarEventData, utc_now


DEFAULT_DURATION = timedelta(hours=1)


def resolve_start(event: CalendarEventData) -> date | datetime:
    if event.is_all_day:
        return event.date
    return datetime.combine(event.date, event.time)


def resolve_end(event: CalendarEventData) -> date | datetime:
    """Return the exclusive end of the event.

    All-day events end on the day after their last day. Timed events use an
    explicit end date and time, then an end time on the start day, then one
    hour after the start.
    """
    if event.is_all_day:
        return (event.end_date or event.date) + timedelta(days=1)
    if event.end_time is not None:
        return datetime.combine(event.end_date or event.date, event.end_time)
    return datetime.combine(event.date, event.time) + DEFAULT_DURATION


def build_ics(
    uid: str,
    event: CalendarEventData,
    *,
    product_id: str = DEFAULT_PRODUCT_ID,
    include_color: bool = True,
    stamp: datetime | None = None,
) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add("PRODID", product_id)

    vevent = ICEvent()
    vevent.add("UID", uid)
    vevent.add("DTSTAMP", stamp or utc_now())
    # Naive datetimes serialize as floating local time, dates as VALUE=DATE.
    vevent.add("DTSTART", resolve_start(event))
    vevent.add("DTEND", resolve_end(event))
    vevent.add("SUMMARY", event.title or "")
    if event.description:
        vevent.add("DESCRIPTION", event.description)
    if include_color and event.color:
        vevent.add("COLOR", event.color)
        vevent.add("X-APPLE-CALENDAR-COLOR", event.color)
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


def object_filename(uid: str) -> str:
    return f"{uid}.ics"
