"""match_etl.events

Event reconciliation for scraped match summaries.

The summary page reports some incidents more than once (the score strip and
the incident list both render goals, and the two copies do not always carry
the same detail).  The source gives events no id of their own, so identity
is inferred from the (minute, type, player) tuple:

  - the first sighting of a key is kept as the canonical event;
  - a later sighting fills a missing assist;
  - isOwnGoal is the OR of all sightings and is never cleared;
  - output preserves first-seen order.

Known limitation: two genuinely distinct events sharing minute, type and
player (e.g. two yellow cards shown to one player in the same minute) are
merged into one.  Conversely, one real event misreported with a different
minute or player is kept twice.  Both follow from trusting the key tuple.
"""

from __future__ import annotations

from typing import Any, Iterable

EVENT_TYPES = frozenset({
    "goal",
    "ownGoal",
    "yellowCard",
    "redCard",
    "substitution",
    "other",
})

# Scraper-side diagnostic flags that must not reach the store.
_DIAGNOSTIC_KEYS = frozenset({
    "hasHomeScore",
    "hasAwayScore",
    "hasSoccerIcon",
    "hasGoalClass",
    "goalTextMatch",
})

Event = dict[str, Any]


def event_key(event: Event) -> tuple[Any, Any, Any]:
    return (event.get("minute"), event.get("type"), event.get("player"))


def reconcile_events(raw: Iterable[Event]) -> list[Event]:
    """Merge duplicate sightings into a minimal canonical event list.

    Input dicts are copied, never mutated.  Running the function on its own
    output returns an equal list.
    """
    by_key: dict[tuple[Any, Any, Any], Event] = {}

    for event in raw:
        key = event_key(event)
        stored = by_key.get(key)
        if stored is None:
            by_key[key] = dict(event)
            continue

        if not stored.get("assist") and event.get("assist"):
            stored["assist"] = event["assist"]

        if event.get("isOwnGoal"):
            stored["isOwnGoal"] = True

    # dicts preserve insertion order, i.e. first-seen order
    return list(by_key.values())


def clean_raw_events(raw: Iterable[Event]) -> list[Event]:
    """Normalize scraper output before reconciliation.

    - 'ownGoal' becomes type 'goal' with isOwnGoal=True
    - unknown types become 'other'
    - diagnostic flags are dropped
    """
    cleaned: list[Event] = []
    for event in raw:
        clean = {k: v for k, v in event.items() if k not in _DIAGNOSTIC_KEYS}
        etype = clean.get("type")
        if etype == "ownGoal":
            clean["type"] = "goal"
            clean["isOwnGoal"] = True
        elif etype not in EVENT_TYPES:
            clean["type"] = "other"
        cleaned.append(clean)
    return cleaned


def prepare_events(raw: Iterable[Event] | None) -> list[Event]:
    """clean_raw_events followed by reconcile_events; None yields []."""
    if not raw:
        return []
    return reconcile_events(clean_raw_events(raw))


def count_goals(events: Iterable[Event]) -> int:
    return sum(1 for e in events if e.get("type") == "goal")
