"""Lifecycle events emitted while a bootstrap runs."""

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class EventName(str, Enum):
    STATUS_UPDATE = "STATUS_UPDATE"
    ERROR = "BOOTSTRAPPER_ERROR"
    DONE = "BOOTSTRAPPER_DONE"

    ITEM_CREATED = "ITEM_CREATED"
    ITEM_UPDATED = "ITEM_UPDATED"
    ITEM_PUBLISHED = "ITEM_PUBLISHED"

    LANGUAGES_UPDATE = "LANGUAGES_UPDATE"
    LANGUAGES_DONE = "LANGUAGES_DONE"
    PRICE_VARIANTS_UPDATE = "PRICE_VARIANTS_UPDATE"
    PRICE_VARIANTS_DONE = "PRICE_VARIANTS_DONE"
    STOCK_LOCATIONS_UPDATE = "STOCK_LOCATIONS_UPDATE"
    STOCK_LOCATIONS_DONE = "STOCK_LOCATIONS_DONE"
    VAT_TYPES_UPDATE = "VAT_TYPES_UPDATE"
    VAT_TYPES_DONE = "VAT_TYPES_DONE"
    SHAPES_UPDATE = "SHAPES_UPDATE"
    SHAPES_DONE = "SHAPES_DONE"
    TOPICS_UPDATE = "TOPICS_UPDATE"
    TOPICS_DONE = "TOPICS_DONE"
    GRIDS_UPDATE = "GRIDS_UPDATE"
    GRIDS_DONE = "GRIDS_DONE"
    ITEMS_UPDATE = "ITEMS_UPDATE"
    ITEMS_DONE = "ITEMS_DONE"


# area name -> (update event, done event)
AREA_EVENTS: dict[str, tuple[EventName, EventName]] = {
    "languages": (EventName.LANGUAGES_UPDATE, EventName.LANGUAGES_DONE),
    "priceVariants": (EventName.PRICE_VARIANTS_UPDATE, EventName.PRICE_VARIANTS_DONE),
    "stockLocations": (EventName.STOCK_LOCATIONS_UPDATE, EventName.STOCK_LOCATIONS_DONE),
    "vatTypes": (EventName.VAT_TYPES_UPDATE, EventName.VAT_TYPES_DONE),
    "shapes": (EventName.SHAPES_UPDATE, EventName.SHAPES_DONE),
    "topicMaps": (EventName.TOPICS_UPDATE, EventName.TOPICS_DONE),
    "grids": (EventName.GRIDS_UPDATE, EventName.GRIDS_DONE),
    "items": (EventName.ITEMS_UPDATE, EventName.ITEMS_DONE),
}


@dataclass
class ItemEventPayload:
    id: str
    name: str | None
    language: str
    shape: dict[str, str] | None = None


class EventBus:
    """Minimal synchronous event emitter.

    A failing listener is logged and skipped; it never breaks the run.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._once: set[tuple[str, int]] = set()

    def on(self, event: EventName | str, fn: Listener) -> None:
        self._listeners[str(EventName(event).value)].append(fn)

    def once(self, event: EventName | str, fn: Listener) -> None:
        self.on(event, fn)
        self._once.add((str(EventName(event).value), id(fn)))

    def off(self, event: EventName | str, fn: Listener) -> None:
        key = str(EventName(event).value)
        listeners = self._listeners.get(key, [])
        if fn in listeners:
            listeners.remove(fn)
        self._once.discard((key, id(fn)))

    def emit(self, event: EventName | str, payload: Any = None) -> None:
        key = str(EventName(event).value)
        for fn in list(self._listeners.get(key, [])):
            if (key, id(fn)) in self._once:
                self.off(event, fn)
            try:
                fn(payload)
            except Exception as e:  # noqa: BLE001
                logger.warning(f"Listener for {key} failed: {type(e).__name__}: {e}")
