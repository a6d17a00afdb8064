"""Translation between local event categories and Google Calendar colorId tags.

The mapping is lossy on purpose: several categories share a color, so a
category pushed to Google does not always come back unchanged. Reverse lookups
of a shared color resolve to the first category, in enum order, that uses it.
"""

from __future__ import annotations

from agenda.models import EventCategory


DEFAULT_COLOR_ID = "1"

CATEGORY_COLOR_IDS: dict[EventCategory, str] = {
    EventCategory.MEETING: "11",
    EventCategory.DEVELOPMENT: "9",
    EventCategory.TASK: "10",
    EventCategory.BREAK: "8",
    EventCategory.TRAINING: "3",
    EventCategory.UNAVAILABLE: "6",
    EventCategory.DEADLINE: "11",
    EventCategory.REMINDER: "5",
    EventCategory.OTHER: DEFAULT_COLOR_ID,
}


def _build_reverse() -> dict[str, EventCategory]:
    reverse: dict[str, EventCategory] = {}
    for category in EventCategory:
        reverse.setdefault(CATEGORY_COLOR_IDS[category], category)
    return reverse


COLOR_ID_CATEGORIES = _build_reverse()


def to_remote_color(category: EventCategory | str | None) -> str:
    if category is None:
        return DEFAULT_COLOR_ID
    return CATEGORY_COLOR_IDS.get(EventCategory.parse(category), DEFAULT_COLOR_ID)


def to_local_category(color_id: str | int | None) -> EventCategory:
    if color_id is None:
        return EventCategory.OTHER
    return COLOR_ID_CATEGORIES.get(str(color_id).strip(), EventCategory.OTHER)
