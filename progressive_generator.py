"""
Progressive multi-destination itinerary generator.

Generation runs in stages so a polling client can render partial results:

1. one metadata call (title, overview, tips)          -> progress 40
2. one call per destination, strictly in order        -> 40 + 50 * k / n
   each followed by venue enrichment via the places client
3. merge + day-number contiguity check                -> complete (100)

Destinations are generated sequentially: day numbering for destination N
starts right after destination N-1, and LLM concurrency stays at one.
Enrichment lookups inside one destination run concurrently.

A destination that still fails after retries ends the generation with an
`error` snapshot that keeps every city finished so far.
"""

import asyncio
import inspect
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

import config
from errors import GenerationFailed, UpstreamFailure, ValidationFailure
from llm_client import LLMClient, PromptPayload, complete_with_retry
from places_client import PlacesClient
from stategraph import (
    Activity,
    ActivityCategory,
    CityResult,
    CombinedItinerary,
    CompleteProgress,
    DestinationSpec,
    ErrorProgress,
    GenerationProgress,
    GenerationRequest,
    ItineraryDay,
    ProcessingProgress,
    TripMetadata,
)
from logger_config import setup_logger

logger = setup_logger(__name__)

ProgressCallback = Callable[[GenerationProgress], Any]

DAILY_COST = {"budget": 150, "mid": 250, "luxury": 500}


# =============================================================================
# Structured Output Models
# =============================================================================

class GeneratedActivity(BaseModel):
    model_config = ConfigDict(extra="forbid")

    time: str = Field(..., description="Start time, HH:MM")
    description: str = Field(..., description="What the traveler does")
    category: str = Field(..., description="One of Work, Leisure, Food, Travel, Accommodation, Attraction")
    address: str = Field(..., description="Best-known address or neighbourhood")
    venue_name: Optional[str] = Field(None, description="Name of the venue, if a specific one")


class GeneratedDay(BaseModel):
    model_config = ConfigDict(extra="forbid")

    day_number: int = Field(..., ge=1, description="Trip-wide day number")
    title: str = Field(..., description="Short theme for the day")
    activities: List[GeneratedActivity] = Field(..., description="5-6 activities in time order")


class CityDaysOutput(BaseModel):
    """Pydantic model for one destination's day plans."""
    model_config = ConfigDict(extra="forbid")

    days: List[GeneratedDay]


class MetadataOutput(BaseModel):
    """Pydantic model for the trip overview call."""
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., description="Catchy trip title")
    overview: str = Field(..., description="Two or three sentence overview of the whole trip")
    quick_tips: List[str] = Field(..., description="3-5 practical tips")


CITY_SYSTEM_PROMPT = """You are an expert travel planner writing day-by-day itineraries.

Rules:
- Produce EXACTLY the requested number of days, numbered consecutively from the given first day number.
- Each day has 5-6 activities in chronological order with HH:MM times.
- category must be one of: Work, Leisure, Food, Travel, Accommodation, Attraction.
- Prefer real, well-known venues and give their address or neighbourhood.
- If the traveler arrives from another city on the first day, start with a Travel activity."""

METADATA_SYSTEM_PROMPT = """You write short, inviting overviews for multi-city trips.
Return a title, a 2-3 sentence overview, and 3-5 practical quick tips."""


# =============================================================================
# Helper Functions
# =============================================================================

def build_fallback_metadata(request: GenerationRequest, destinations: List[DestinationSpec]) -> TripMetadata:
    """Deterministic overview used when the metadata call fails."""
    names = [d.name for d in destinations]
    total_days = sum(d.day_count for d in destinations)
    if len(names) == 1:
        title = f"{names[0]} Adventure"
    elif len(names) == 2:
        title = f"{names[0]} & {names[1]} Journey"
    else:
        title = f"{', '.join(names[:-1])} & {names[-1]} Tour"

    tips = [
        f"Book accommodation in {names[0]} early for the best rates",
        "Keep digital copies of your passport and bookings",
        "Check local transport passes before you arrive",
    ]
    if len(names) > 1:
        tips.insert(1, f"Reserve transport between {' and '.join(names)} in advance")

    budget = (request.budget_hint or request.preferences.get("budget") or "mid").lower()
    travelers = request.traveler_count or 1
    end_date = request.start_date + timedelta(days=max(total_days - 1, 0))

    return TripMetadata(
        title=title,
        overview=f"A {total_days}-day trip through {', '.join(names)}.",
        destinations=names,
        total_days=total_days,
        start_date=request.start_date.isoformat(),
        end_date=end_date.isoformat(),
        quick_tips=tips,
        estimated_cost=DAILY_COST.get(budget, DAILY_COST["mid"]) * total_days * travelers,
    )


def validate_day_sequence(days: List[ItineraryDay], destinations: List[DestinationSpec]) -> None:
    """
    Day numbers must run 1..total with no gaps or repeats, and each
    destination's block must start right after the previous one.
    """
    total = sum(d.day_count for d in destinations)
    numbers = [d.day_number for d in days]
    if numbers != list(range(1, total + 1)):
        raise ValidationFailure(f"Day numbers are not contiguous 1..{total}: {numbers}")

    offset = 0
    for dest in sorted(destinations, key=lambda d: d.order):
        block = days[offset:offset + dest.day_count]
        if any(day.destination != dest.name for day in block):
            raise ValidationFailure(
                f"Days {offset + 1}-{offset + dest.day_count} should belong to {dest.name}"
            )
        offset += dest.day_count


def combine_itinerary(
    metadata: TripMetadata,
    all_cities: List[CityResult],
    request: GenerationRequest,
) -> CombinedItinerary:
    days = sorted((day for city in all_cities for day in city.data), key=lambda d: d.day_number)
    total_days = len(days)
    end_date = request.start_date + timedelta(days=max(total_days - 1, 0))
    return CombinedItinerary(
        title=metadata.title,
        destination=", ".join(city.city for city in all_cities),
        start_date=request.start_date.isoformat(),
        end_date=end_date.isoformat(),
        total_days=total_days,
        itinerary=days,
        quick_tips=metadata.quick_tips,
        metadata=metadata,
    )


def _preferences_text(request: GenerationRequest) -> str:
    parts = [f"{key.replace('_', ' ')}: {value}" for key, value in request.preferences.items()]
    if request.traveler_count:
        parts.append(f"travelers: {request.traveler_count}")
    if request.budget_hint and "budget" not in request.preferences:
        parts.append(f"budget: {request.budget_hint}")
    return "; ".join(parts) or "none stated"


# =============================================================================
# Generator
# =============================================================================

class ProgressiveTripGenerator:
    """Generates a multi-city itinerary one destination at a time, reporting progress."""

    def __init__(
        self,
        llm: LLMClient,
        places: Optional[PlacesClient] = None,
        enrich_concurrency: int = config.ENRICHMENT_CONCURRENCY,
        heartbeat_seconds: float = config.HEARTBEAT_SECONDS,
        max_llm_retries: Optional[int] = None,
        retry_delay_base: Optional[float] = None,
    ):
        self.llm = llm
        self.places = places
        self.enrich_concurrency = max(1, enrich_concurrency)
        self.heartbeat_seconds = heartbeat_seconds
        self._retry_kwargs = {}
        if max_llm_retries is not None:
            self._retry_kwargs["max_retries"] = max_llm_retries
        if retry_delay_base is not None:
            self._retry_kwargs["delay_base"] = retry_delay_base

    # -------------------------------------------------------------------------
    # Progress plumbing
    # -------------------------------------------------------------------------

    @staticmethod
    async def _emit(on_progress: ProgressCallback, snapshot: GenerationProgress) -> None:
        result = on_progress(snapshot)
        if inspect.isawaitable(result):
            await result

    @asynccontextmanager
    async def _heartbeat(self, on_progress: ProgressCallback, snapshot: ProcessingProgress):
        """Re-emit the last snapshot with a fresh timestamp while a slow call runs."""
        if self.heartbeat_seconds <= 0:
            yield
            return

        async def beat():
            while True:
                await asyncio.sleep(self.heartbeat_seconds)
                await self._emit(on_progress, snapshot.model_copy(update={"updated_at": datetime.now()}))

        task = asyncio.create_task(beat())
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def generate_progressive(self, request: GenerationRequest, on_progress: ProgressCallback) -> CombinedItinerary:
        destinations = sorted(request.destinations, key=lambda d: d.order)
        if not destinations:
            raise ValidationFailure("No destinations to generate")
        missing = [d.name for d in destinations if d.day_count <= 0]
        if missing:
            raise ValidationFailure(f"Destinations without a day count: {', '.join(missing)}")

        total = len(destinations)
        logger.info(f"Starting progressive generation: {[(d.name, d.day_count) for d in destinations]}")

        # Stage 1: metadata
        sketching = ProcessingProgress(status="generating_metadata", progress=30, message="Sketching your trip overview")
        await self._emit(on_progress, sketching)
        async with self._heartbeat(on_progress, sketching):
            metadata = await self._generate_metadata(request, destinations)
        await self._emit(on_progress, ProcessingProgress(
            status="metadata_ready",
            progress=40,
            message=f"Planning {metadata.title}",
            metadata=metadata,
        ))

        # Stage 2: destinations, strictly in order
        all_cities: List[CityResult] = []
        offset = 1
        previous_city = None
        for index, dest in enumerate(destinations):
            progress_before = 40 + (50 * index) // total
            working = ProcessingProgress(
                status="generating_city",
                progress=progress_before,
                message=f"Planning {dest.name} ({index + 1}/{total})",
                metadata=metadata,
                city=dest.name,
                all_cities=list(all_cities),
            )
            await self._emit(on_progress, working)

            try:
                async with self._heartbeat(on_progress, working):
                    days = await self._generate_city(request, dest, offset, previous_city)
            except (UpstreamFailure, ValidationFailure) as e:
                logger.error(f"Generation failed for {dest.name}: {e}", exc_info=True)
                await self._emit(on_progress, ErrorProgress(
                    status="city_failed",
                    progress=progress_before,
                    message=f"We couldn't finish planning {dest.name}. Cities already planned are kept.",
                    all_cities=list(all_cities),
                    detail=str(e),
                ))
                raise GenerationFailed(str(e), city=dest.name, all_cities=all_cities) from e

            await self._enrich(days, dest.name)
            all_cities.append(CityResult(city=dest.name, data=days))
            offset += dest.day_count
            previous_city = dest.name

            await self._emit(on_progress, ProcessingProgress(
                status="city_complete",
                progress=40 + (50 * (index + 1)) // total,
                message=f"{dest.name} is ready",
                metadata=metadata,
                city=dest.name,
                all_cities=list(all_cities),
            ))
            logger.info(f"City complete: {dest.name} ({index + 1}/{total})")

        # Stage 3: merge and validate
        await self._emit(on_progress, ProcessingProgress(
            status="finalizing",
            progress=95,
            message="Putting it all together",
            metadata=metadata,
            all_cities=list(all_cities),
        ))
        itinerary = combine_itinerary(metadata, all_cities, request)
        try:
            validate_day_sequence(itinerary.itinerary, destinations)
        except ValidationFailure as e:
            logger.error(f"Merged itinerary failed validation: {e}")
            await self._emit(on_progress, ErrorProgress(
                status="validation_failed",
                progress=95,
                message="The generated days did not line up. Please try again.",
                all_cities=list(all_cities),
                detail=str(e),
            ))
            raise GenerationFailed(str(e), all_cities=all_cities) from e

        await self._emit(on_progress, CompleteProgress(
            status="complete",
            progress=100,
            message=f"{itinerary.title} is ready",
            itinerary=itinerary,
            metadata=metadata,
            all_cities=list(all_cities),
        ))
        logger.info(f"Generation complete: {itinerary.title}, {itinerary.total_days} days")
        return itinerary

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    async def _generate_metadata(self, request: GenerationRequest, destinations: List[DestinationSpec]) -> TripMetadata:
        fallback = build_fallback_metadata(request, destinations)
        stops = ", ".join(f"{d.name} ({d.day_count} days)" for d in destinations)
        prompt = PromptPayload(
            task="trip_metadata",
            system=METADATA_SYSTEM_PROMPT,
            user=f"Trip: {stops}\nStarting: {request.start_date.isoformat()}\nPreferences: {_preferences_text(request)}",
        )
        try:
            output = await complete_with_retry(self.llm, prompt, MetadataOutput, **self._retry_kwargs)
        except (UpstreamFailure, ValidationFailure) as e:
            logger.warning(f"Metadata generation failed, using fallback overview: {e}")
            return fallback

        return fallback.model_copy(update={
            "title": output.title.strip() or fallback.title,
            "overview": output.overview.strip() or fallback.overview,
            "quick_tips": [tip for tip in output.quick_tips if tip.strip()] or fallback.quick_tips,
        })

    # -------------------------------------------------------------------------
    # Per-destination days
    # -------------------------------------------------------------------------

    def _city_prompt(
        self,
        request: GenerationRequest,
        dest: DestinationSpec,
        offset: int,
        previous_city: Optional[str],
        correction: Optional[str],
    ) -> PromptPayload:
        last_day = offset + dest.day_count - 1
        first_date = request.start_date + timedelta(days=offset - 1)
        arrival = f"The traveler arrives from {previous_city} on day {offset}." if previous_city else (
            f"The traveler arrives from {request.origin}." if request.origin else "This is the first stop."
        )
        user = f"""Destination: {dest.name}
Number of days: {dest.day_count}
Day numbers: {offset} to {last_day} (first date {first_date.isoformat()})
{arrival}
Preferences: {_preferences_text(request)}"""
        if correction:
            user += f"\n\nYOUR PREVIOUS ANSWER WAS REJECTED: {correction}\nReturn exactly {dest.day_count} days numbered {offset} to {last_day}."
        return PromptPayload(task=f"city_days:{dest.name}", system=CITY_SYSTEM_PROMPT, user=user)

    def _normalize_city_days(
        self,
        output: CityDaysOutput,
        dest: DestinationSpec,
        offset: int,
        start_date: date,
        previous_city: Optional[str],
    ) -> List[ItineraryDay]:
        if len(output.days) != dest.day_count:
            raise ValidationFailure(
                f"Expected {dest.day_count} days for {dest.name} numbered {offset}-{offset + dest.day_count - 1}, "
                f"got {len(output.days)}"
            )

        days: List[ItineraryDay] = []
        # Right count but wrong numbering (e.g. restarting at 1) is renumbered to the offset
        for position, raw in enumerate(sorted(output.days, key=lambda d: d.day_number)):
            if not raw.activities:
                raise ValidationFailure(f"Day {raw.day_number} for {dest.name} has no activities")
            day_number = offset + position
            activities = [
                Activity(
                    time=a.time,
                    description=a.description,
                    category=a.category,
                    address=a.address,
                    venue_name=a.venue_name or None,
                )
                for a in raw.activities
            ]
            days.append(ItineraryDay(
                day_number=day_number,
                date=(start_date + timedelta(days=day_number - 1)).isoformat(),
                title=raw.title,
                destination=dest.name,
                activities=activities,
            ))

        if previous_city and not any(a.category == ActivityCategory.TRAVEL for a in days[0].activities):
            days[0].activities.insert(0, Activity(
                time="08:00",
                description=f"Travel from {previous_city} to {dest.name}",
                category=ActivityCategory.TRAVEL,
                address=dest.name,
            ))
        return days

    async def _generate_city(
        self,
        request: GenerationRequest,
        dest: DestinationSpec,
        offset: int,
        previous_city: Optional[str],
    ) -> List[ItineraryDay]:
        correction = None
        for attempt in range(2):
            prompt = self._city_prompt(request, dest, offset, previous_city, correction)
            try:
                output = await complete_with_retry(self.llm, prompt, CityDaysOutput, **self._retry_kwargs)
                return self._normalize_city_days(output, dest, offset, request.start_date, previous_city)
            except ValidationFailure as e:
                correction = str(e)
                logger.warning(f"{dest.name} days rejected on attempt {attempt + 1}: {e}")

        raise ValidationFailure(f"{dest.name}: generated days failed validation twice ({correction})")

    # -------------------------------------------------------------------------
    # Venue enrichment
    # -------------------------------------------------------------------------

    async def _enrich(self, days: List[ItineraryDay], city: str) -> int:
        """Attach venue name/address/coordinates where missing. Never raises."""
        if self.places is None:
            return 0

        targets = [
            activity
            for day in days
            for activity in day.activities
            if activity.category != ActivityCategory.TRAVEL
            and (activity.venue_name is None or activity.coordinates is None)
        ]
        if not targets:
            return 0

        semaphore = asyncio.Semaphore(self.enrich_concurrency)

        async def enrich_one(activity: Activity) -> bool:
            subject = activity.venue_name or activity.description or activity.category.value
            async with semaphore:
                candidates = await self.places.search(f"{subject} near {city}", near=city)
            if not candidates:
                return False
            best = candidates[0]
            activity.venue_name = activity.venue_name or best.name
            activity.address = best.address or activity.address
            activity.coordinates = best.coordinates
            if best.rating is not None:
                activity.rating = best.rating
            return True

        results = await asyncio.gather(*(enrich_one(a) for a in targets), return_exceptions=True)
        enriched = 0
        for activity, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"Enrichment failed for '{activity.description}' in {city}: {result}")
            elif result:
                enriched += 1
        logger.info(f"Enriched {enriched}/{len(targets)} activities in {city}")
        return enriched
