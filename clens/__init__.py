"""Session distillation for coding-agent hook events."""

from clens.distill import distill_events, distill_session
from clens.errors import ClensError, JourneyLookupError, SessionNotFoundError
from clens.journey import list_journeys, resolve_journey_id

__all__ = [
    "distill_events",
    "distill_session",
    "list_journeys",
    "resolve_journey_id",
    "ClensError",
    "JourneyLookupError",
    "SessionNotFoundError",
]

__version__ = "0.1.0"
