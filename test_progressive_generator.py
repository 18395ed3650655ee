"""
Tests for progressive_generator.py

Covers the progress sequence, contiguous day numbering across destinations,
corrective retries, partial results on failure, metadata fallback and venue
enrichment.
"""
import asyncio
from datetime import date

import pytest

from conftest import FakeLLM, FakePlaces, city_days, metadata_output, trip_router
from errors import GenerationFailed, UpstreamFailure, ValidationFailure
from progressive_generator import (
    MetadataOutput,
    ProgressiveTripGenerator,
    build_fallback_metadata,
    validate_day_sequence,
)
from stategraph import (
    ActivityCategory,
    DestinationSpec,
    GenerationRequest,
    ItineraryDay,
)


def _request(*stops, **kwargs):
    kwargs.setdefault("start_date", date(2026, 3, 16))
    return GenerationRequest(
        destinations=[
            DestinationSpec(name=name, day_count=days, order=i, confirmed=True)
            for i, (name, days) in enumerate(stops, start=1)
        ],
        **kwargs,
    )


def _generator(llm, places=None):
    return ProgressiveTripGenerator(llm, places=places, heartbeat_seconds=0, max_llm_retries=1, retry_delay_base=0)


def _run(generator, request):
    snapshots = []
    itinerary = asyncio.run(generator.generate_progressive(request, snapshots.append))
    return itinerary, snapshots


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestProgressiveGeneration:
    def test_two_cities_are_numbered_contiguously(self):
        llm = FakeLLM(router=trip_router({"Lisbon": 10, "Granada": 4}))
        itinerary, _ = _run(_generator(llm), _request(("Lisbon", 10), ("Granada", 4)))

        assert itinerary.total_days == 14
        assert [d.day_number for d in itinerary.itinerary] == list(range(1, 15))
        assert {d.destination for d in itinerary.itinerary[:10]} == {"Lisbon"}
        assert {d.destination for d in itinerary.itinerary[10:]} == {"Granada"}
        assert itinerary.start_date == "2026-03-16"
        assert itinerary.end_date == "2026-03-29"
        assert itinerary.itinerary[10].date == "2026-03-26"
        assert itinerary.destination == "Lisbon, Granada"

    def test_progress_sequence(self):
        llm = FakeLLM(router=trip_router({"Lisbon": 10, "Granada": 4}))
        _, snapshots = _run(_generator(llm), _request(("Lisbon", 10), ("Granada", 4)))

        assert [s.progress for s in snapshots] == [30, 40, 40, 65, 65, 90, 95, 100]
        assert [s.status for s in snapshots] == [
            "generating_metadata", "metadata_ready",
            "generating_city", "city_complete",
            "generating_city", "city_complete",
            "finalizing", "complete",
        ]
        assert snapshots[-1].type == "complete"
        assert [c.city for c in snapshots[3].all_cities] == ["Lisbon"]

    def test_llm_calls_are_sequential_and_ordered(self):
        llm = FakeLLM(router=trip_router({"Paris": 2, "Rome": 2, "Berlin": 1}))
        _run(_generator(llm), _request(("Paris", 2), ("Rome", 2), ("Berlin", 1)))
        assert llm.tasks() == ["trip_metadata", "city_days:Paris", "city_days:Rome", "city_days:Berlin"]
        assert "Day numbers: 3 to 4" in llm.calls[2][0].user

    def test_travel_activity_added_on_arrival_day(self):
        llm = FakeLLM(router=trip_router({"Lisbon": 2, "Granada": 2}))
        itinerary, _ = _run(_generator(llm), _request(("Lisbon", 2), ("Granada", 2)))

        first_granada = itinerary.itinerary[2].activities[0]
        assert first_granada.category == ActivityCategory.TRAVEL
        assert first_granada.description == "Travel from Lisbon to Granada"
        assert itinerary.itinerary[0].activities[0].category != ActivityCategory.TRAVEL

    def test_category_is_normalized(self):
        llm = FakeLLM(router=trip_router({"Rome": 1}))
        itinerary, _ = _run(_generator(llm), _request(("Rome", 1)))
        assert itinerary.itinerary[0].activities[-1].category == ActivityCategory.FOOD

    def test_async_progress_callback(self):
        seen = []

        async def on_progress(snapshot):
            seen.append(snapshot.progress)

        llm = FakeLLM(router=trip_router({"Rome": 2}))
        asyncio.run(_generator(llm).generate_progressive(_request(("Rome", 2)), on_progress))
        assert seen == [30, 40, 40, 90, 95, 100]


# ---------------------------------------------------------------------------
# Validation and retries
# ---------------------------------------------------------------------------

class TestCityValidation:
    def test_days_restarting_at_one_are_renumbered(self):
        def route(prompt, schema):
            if schema is MetadataOutput:
                return metadata_output()
            city = prompt.task.split(":", 1)[1]
            return city_days({"Lisbon": 3, "Granada": 2}[city], first_day=1)

        itinerary, _ = _run(_generator(FakeLLM(router=route)), _request(("Lisbon", 3), ("Granada", 2)))
        assert [d.day_number for d in itinerary.itinerary] == [1, 2, 3, 4, 5]

    def test_wrong_day_count_gets_corrective_retry(self):
        llm = FakeLLM([metadata_output(), city_days(3), city_days(2)])
        itinerary, _ = _run(_generator(llm), _request(("Rome", 2)))
        assert itinerary.total_days == 2
        assert len(llm.calls) == 3
        assert "REJECTED" in llm.calls[2][0].user

    def test_wrong_day_count_twice_fails(self):
        llm = FakeLLM([metadata_output(), city_days(3), city_days(3)])
        with pytest.raises(GenerationFailed) as excinfo:
            _run(_generator(llm), _request(("Rome", 2)))
        assert excinfo.value.city == "Rome"

    def test_partial_results_survive_a_failed_city(self):
        llm = FakeLLM(router=trip_router(
            {"Paris": 2, "Rome": 2, "Berlin": 2},
            fail={"Rome": UpstreamFailure("provider down")},
        ))
        snapshots = []
        generator = _generator(llm)
        with pytest.raises(GenerationFailed) as excinfo:
            asyncio.run(generator.generate_progressive(
                _request(("Paris", 2), ("Rome", 2), ("Berlin", 2)), snapshots.append,
            ))

        assert excinfo.value.city == "Rome"
        assert [c.city for c in excinfo.value.all_cities] == ["Paris"]
        last = snapshots[-1]
        assert last.type == "error"
        assert last.status == "city_failed"
        assert last.progress == 56
        assert [c.city for c in last.all_cities] == ["Paris"]
        assert "city_days:Berlin" not in llm.tasks()

    def test_empty_destinations_rejected(self):
        request = GenerationRequest(destinations=[], start_date=date(2026, 3, 16))
        with pytest.raises(ValidationFailure):
            _run(_generator(FakeLLM()), request)

    def test_zero_day_destination_rejected(self):
        with pytest.raises(ValidationFailure):
            _run(_generator(FakeLLM()), _request(("Rome", 0)))


def test_validate_day_sequence_detects_gap():
    destinations = [DestinationSpec(name="Rome", day_count=2, order=1)]
    days = [
        ItineraryDay(day_number=1, date="2026-03-16", title="a", destination="Rome"),
        ItineraryDay(day_number=3, date="2026-03-18", title="b", destination="Rome"),
    ]
    with pytest.raises(ValidationFailure):
        validate_day_sequence(days, destinations)


def test_validate_day_sequence_detects_wrong_block():
    destinations = [
        DestinationSpec(name="Rome", day_count=1, order=1),
        DestinationSpec(name="Milan", day_count=1, order=2),
    ]
    days = [
        ItineraryDay(day_number=1, date="2026-03-16", title="a", destination="Milan"),
        ItineraryDay(day_number=2, date="2026-03-17", title="b", destination="Rome"),
    ]
    with pytest.raises(ValidationFailure):
        validate_day_sequence(days, destinations)


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

class TestMetadata:
    def test_fallback_when_metadata_call_fails(self):
        route = trip_router({"Lisbon": 2, "Granada": 2})

        def failing_metadata(prompt, schema):
            if schema is MetadataOutput:
                return UpstreamFailure("metadata down")
            return route(prompt, schema)

        itinerary, _ = _run(_generator(FakeLLM(router=failing_metadata)), _request(("Lisbon", 2), ("Granada", 2)))
        assert itinerary.title == "Lisbon & Granada Journey"
        assert itinerary.metadata.total_days == 4

    def test_llm_title_is_used(self):
        itinerary, _ = _run(_generator(FakeLLM(router=trip_router({"Rome": 1}))), _request(("Rome", 1)))
        assert itinerary.title == "Grand Tour"
        assert itinerary.quick_tips == ["Pack light"]
        assert itinerary.metadata.estimated_cost == 250

    def test_fallback_titles_and_cost(self):
        single = build_fallback_metadata(_request(("Rome", 3)), _request(("Rome", 3)).destinations)
        assert single.title == "Rome Adventure"

        request = _request(("Paris", 1), ("Rome", 1), ("Berlin", 1), budget_hint="luxury", traveler_count=2)
        metadata = build_fallback_metadata(request, request.destinations)
        assert metadata.title == "Paris, Rome & Berlin Tour"
        assert metadata.estimated_cost == 500 * 3 * 2
        assert metadata.end_date == "2026-03-18"


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------

class TestEnrichment:
    def test_activities_get_venues(self):
        places = FakePlaces()
        llm = FakeLLM(router=trip_router({"Rome": 1}))
        itinerary, _ = _run(_generator(llm, places), _request(("Rome", 1)))

        breakfast, tour, dinner = itinerary.itinerary[0].activities
        assert breakfast.venue_name == "Venue for Breakfast at a local cafe"
        assert breakfast.address == "1 Main Street, Rome"
        assert breakfast.coordinates.lat == 41.9
        assert breakfast.rating == 4.5
        assert dinner.venue_name == "Trattoria"
        assert ("Trattoria near Rome", "Rome") in places.queries

    def test_failed_lookup_keeps_activity(self):
        places = FakePlaces(fail_for=["walking tour"])
        llm = FakeLLM(router=trip_router({"Rome": 1}))
        itinerary, snapshots = _run(_generator(llm, places), _request(("Rome", 1)))

        tour = itinerary.itinerary[0].activities[1]
        assert tour.address == "Centre"
        assert tour.coordinates is None
        assert snapshots[-1].type == "complete"

    def test_travel_activities_are_not_looked_up(self):
        places = FakePlaces()
        llm = FakeLLM(router=trip_router({"Lisbon": 1, "Granada": 1}))
        _run(_generator(llm, places), _request(("Lisbon", 1), ("Granada", 1)))
        assert not any(query.startswith("Travel from") for query, _ in places.queries)
