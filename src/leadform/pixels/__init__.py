from leadform.pixels.base import (
    PIXEL_EVENTS,
    PLATFORMS,
    EventContext,
    LineItem,
    PixelConfig,
    RequestSnapshot,
)
from leadform.pixels.dispatch import DispatchOptions, fire_pixels_for_request, spawn_pixel_dispatch
from leadform.pixels.events import map_event_name, sanitize_ga4_event_name
from leadform.pixels.identity import normalize_email, normalize_phone

__all__ = [
    "PIXEL_EVENTS",
    "PLATFORMS",
    "EventContext",
    "LineItem",
    "PixelConfig",
    "RequestSnapshot",
    "DispatchOptions",
    "fire_pixels_for_request",
    "spawn_pixel_dispatch",
    "map_event_name",
    "sanitize_ga4_event_name",
    "normalize_email",
    "normalize_phone",
]
