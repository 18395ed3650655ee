"""
Error taxonomy for the trip planner.

ParseFailure and StateExpired are recovered locally (a clarifying question, a
fresh session). ValidationFailure gets one corrective retry. UpstreamFailure
and its variants are retried with backoff by the caller.
"""

from typing import Any, List, Optional


class TripPlannerError(Exception):
    """Base class for all trip planner errors."""


class ParseFailure(TripPlannerError):
    """No usable travel intent could be produced from the message."""


class ValidationFailure(TripPlannerError):
    """Model output failed schema or invariant checks."""


class InvalidResponse(ValidationFailure):
    """The LLM returned output that does not match the requested schema."""


class UpstreamFailure(TripPlannerError):
    """Transport-level failure talking to the LLM or places provider."""


class RateLimited(UpstreamFailure):
    """The provider throttled the request."""


class UpstreamTimeout(UpstreamFailure):
    """The provider did not answer in time."""


class StateExpired(TripPlannerError):
    """A session's TTL elapsed since its last activity."""

    def __init__(self, session_id: str):
        super().__init__(f"Conversation state for session {session_id} has expired")
        self.session_id = session_id


class GenerationFailed(TripPlannerError):
    """A destination could not be generated; carries what succeeded so far."""

    def __init__(self, message: str, city: Optional[str] = None, all_cities: Optional[List[Any]] = None):
        super().__init__(message)
        self.city = city
        self.all_cities = list(all_cities or [])
