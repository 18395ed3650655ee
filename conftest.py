import os

# Keep test runs from writing trip_planner.log into the working tree
os.environ.setdefault("LOG_FILE", "")

from datetime import date, datetime, timedelta
from typing import Any, Callable, List, Optional

import pytest

from conversation_state import ConversationStateManager
from errors import UpstreamFailure
from places_client import PlaceCandidate
from progress_store import ProgressStore
from progressive_generator import CityDaysOutput, MetadataOutput
from stategraph import Coordinates

TODAY = date(2026, 3, 2)  # a Monday


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeLLM:
    """
    Scripted LLMClient.

    Either a queue of responses consumed in call order (exceptions are
    raised, dicts are validated into the requested schema), or a router
    callable `(prompt, schema) -> response` for schema-dependent answers.
    """

    def __init__(self, responses: Optional[List[Any]] = None, router: Optional[Callable] = None):
        self.responses = list(responses or [])
        self.router = router
        self.calls = []

    async def complete(self, prompt, schema):
        self.calls.append((prompt, schema))
        if self.router is not None:
            response = self.router(prompt, schema)
        elif self.responses:
            response = self.responses.pop(0)
        else:
            raise UpstreamFailure("no scripted response")
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            return schema.model_validate(response)
        return response

    def tasks(self) -> List[str]:
        return [prompt.task for prompt, _ in self.calls]


class FakePlaces:
    def __init__(self, fail_for: Optional[List[str]] = None):
        self.fail_for = [f.lower() for f in (fail_for or [])]
        self.queries = []

    async def search(self, query, near=None):
        self.queries.append((query, near))
        if any(token in query.lower() for token in self.fail_for):
            raise UpstreamFailure(f"lookup failed for {query}")
        return [PlaceCandidate(
            name=f"Venue for {query.split(' near ')[0]}",
            address=f"1 Main Street, {near}",
            coordinates=Coordinates(lat=41.9, lon=12.5),
            rating=4.5,
            importance=0.8,
        )]


class ManualClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def city_days(count: int, first_day: int = 1, title: str = "Exploring") -> CityDaysOutput:
    return CityDaysOutput.model_validate({
        "days": [
            {
                "day_number": first_day + i,
                "title": f"{title} day {i + 1}",
                "activities": [
                    {"time": "09:00", "description": "Breakfast at a local cafe", "category": "Food", "address": "Old Town"},
                    {"time": "11:00", "description": "Walking tour", "category": "Attraction", "address": "Centre"},
                    {"time": "19:00", "description": "Dinner", "category": "food", "address": "Harbour", "venue_name": "Trattoria"},
                ],
            }
            for i in range(count)
        ]
    })


def metadata_output(title: str = "Grand Tour") -> MetadataOutput:
    return MetadataOutput(title=title, overview="A lovely trip.", quick_tips=["Pack light"])


def trip_router(day_counts: dict, fail: Optional[dict] = None):
    """
    Router answering metadata and per-city calls.

    `fail` maps a city name to an exception raised for every call about it.
    """
    fail = fail or {}

    def route(prompt, schema):
        if schema is MetadataOutput:
            return metadata_output()
        city = prompt.task.split(":", 1)[1]
        if city in fail:
            return fail[city]
        first_day = int(prompt.user.split("Day numbers: ")[1].split(" ")[0])
        return city_days(day_counts[city], first_day, title=city)

    return route


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def state_manager(clock):
    return ConversationStateManager(clock=clock)


@pytest.fixture
def progress_store(clock):
    return ProgressStore(clock=clock, dev_mode=False)


@pytest.fixture
def fake_places():
    return FakePlaces()


@pytest.fixture
def today():
    return TODAY
