# Trip planner data model: travel intents, conversation state, itinerary
# output and the progress snapshots published while an itinerary is generated.

from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel
from enum import Enum
from datetime import datetime, date
import uuid


# ============================================================
# UTILITY: FlexibleDate parser
# ============================================================
class FlexibleDate:
    """
    Utility to parse a calendar date from the formats that show up in
    LLM output and client payloads.
    """

    @staticmethod
    def parse(value: Any) -> Optional[date]:
        """
        Parse a value into a date object.
        Supports:
        - date / datetime objects
        - ISO 8601 strings ("2026-03-10", "2026-03-10T09:15:00")
        - day-first strings ("10-03-2026", "10/03/2026")
        """
        if isinstance(value, datetime):
            return value.date()

        if isinstance(value, date):
            return value

        if isinstance(value, str):
            text = value.strip()
            if "T" in text:
                text = text.split("T", 1)[0]
            for fmt in ["%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%Y/%m/%d"]:
                try:
                    return datetime.strptime(text, fmt).date()
                except ValueError:
                    continue

        return None


class WireModel(BaseModel):
    """Models that cross the HTTP boundary: camelCase on the wire, snake_case in code."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================
# PART 1: ENUMS
# ============================================================

class Phase(str, Enum):
    """Which phase of the conversation are we in?"""
    INITIAL = "initial"          # Nothing useful collected yet
    PLANNING = "planning"        # Collecting destinations and day counts
    CONFIRMING = "confirming"    # Waiting for the user to confirm a split or conflict
    MODIFYING = "modifying"      # Editing an existing itinerary
    FINALIZING = "finalizing"    # Itinerary generated or being generated


class InputType(str, Enum):
    """How a single chat turn was classified."""
    STRUCTURED = "structured"          # Place + day count, ready to parse
    CONVERSATIONAL = "conversational"  # Mood / style, or a yes/no reply
    MODIFICATION = "modification"      # Edit of an existing itinerary
    QUESTION = "question"              # User is asking something
    AMBIGUOUS = "ambiguous"            # Not enough signal to act on


class ActivityCategory(str, Enum):
    WORK = "Work"
    LEISURE = "Leisure"
    FOOD = "Food"
    TRAVEL = "Travel"
    ACCOMMODATION = "Accommodation"
    ATTRACTION = "Attraction"


# ============================================================
# PART 2: TRAVEL INTENT
# ============================================================

class DestinationSpec(WireModel):
    name: str
    day_count: int = Field(0, ge=0)
    order: int = Field(1, ge=1)
    confirmed: bool = False


def check_contiguous_order(destinations: List[DestinationSpec]) -> None:
    """Raise ValueError unless destination orders are exactly 1..n."""
    orders = sorted(d.order for d in destinations)
    if orders != list(range(1, len(destinations) + 1)):
        raise ValueError(f"destination order must be contiguous from 1, got {orders}")


class TravelIntent(WireModel):
    destinations: List[DestinationSpec] = Field(default_factory=list)
    origin: Optional[str] = None
    return_to: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    date_hint: Optional[str] = None         # "next month", "this weekend", ...
    traveler_count: Optional[int] = None
    preferences: List[str] = Field(default_factory=list)
    budget_hint: Optional[str] = None
    pace: Optional[str] = None
    total_days: int = 0
    stated_total_days: Optional[int] = None
    conflicts: List[str] = Field(default_factory=list)
    source: Literal["parser", "llm", "hybrid"] = "parser"

    @model_validator(mode="after")
    def _orders_are_contiguous(self) -> "TravelIntent":
        check_contiguous_order(self.destinations)
        return self


# ============================================================
# PART 3: CONVERSATION STATE
# ============================================================

class TravelConstraint(WireModel):
    kind: Literal["budget", "pace", "travelers", "date", "avoid", "must_see", "other"] = "other"
    value: str


class ConversationContext(WireModel):
    destinations: List[DestinationSpec] = Field(default_factory=list)
    origin: Optional[str] = None
    total_days: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    date_hint: Optional[str] = None
    traveler_count: Optional[int] = None
    preferences: Dict[str, str] = Field(default_factory=dict)
    constraints: List[TravelConstraint] = Field(default_factory=list)
    phase: Phase = Phase.INITIAL
    last_intent: Optional[InputType] = None
    has_itinerary: bool = False
    # Conflict text from the last extraction, cleared once confirmed
    pending_conflicts: List[str] = Field(default_factory=list)


class ConversationMessage(WireModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime
    classification: Optional[InputType] = None


class ConversationMetadata(WireModel):
    start_time: datetime
    last_activity: datetime
    message_count: int = 0
    errors: List[str] = Field(default_factory=list)


class ConversationState(WireModel):
    session_id: str
    messages: List[ConversationMessage] = Field(default_factory=list)
    context: ConversationContext = Field(default_factory=ConversationContext)
    current_itinerary: Optional["CombinedItinerary"] = None
    itinerary_history: List["CombinedItinerary"] = Field(default_factory=list)
    metadata: ConversationMetadata


# ============================================================
# PART 4: ITINERARY OUTPUT
# ============================================================

class Coordinates(WireModel):
    lat: float
    lon: float


class Activity(WireModel):
    time: str = "09:00"
    description: str
    category: ActivityCategory = ActivityCategory.LEISURE
    address: str = ""
    venue_name: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    rating: Optional[float] = None

    @field_validator("category", mode="before")
    @classmethod
    def _lenient_category(cls, v: Any) -> Any:
        # Models drift on casing and invent categories ("Sightseeing")
        if isinstance(v, ActivityCategory):
            return v
        if isinstance(v, str):
            for category in ActivityCategory:
                if category.value.lower() == v.strip().lower():
                    return category
        return ActivityCategory.LEISURE


class ItineraryDay(WireModel):
    day_number: int = Field(..., ge=1)
    date: str  # ISO YYYY-MM-DD
    title: str
    destination: str
    activities: List[Activity] = Field(default_factory=list)


class CityResult(WireModel):
    city: str
    data: List[ItineraryDay] = Field(default_factory=list)


class TripMetadata(WireModel):
    title: str
    overview: str = ""
    destinations: List[str] = Field(default_factory=list)
    total_days: int = 0
    start_date: str = ""
    end_date: str = ""
    quick_tips: List[str] = Field(default_factory=list)
    estimated_cost: Optional[int] = None


class CombinedItinerary(WireModel):
    title: str
    destination: str
    start_date: str
    end_date: str
    total_days: int
    itinerary: List[ItineraryDay] = Field(default_factory=list)
    quick_tips: List[str] = Field(default_factory=list)
    metadata: Optional[TripMetadata] = None


ConversationState.model_rebuild()


class GenerationRequest(WireModel):
    destinations: List[DestinationSpec]
    start_date: date
    preferences: Dict[str, str] = Field(default_factory=dict)
    origin: Optional[str] = None
    traveler_count: Optional[int] = None
    budget_hint: Optional[str] = None

    @model_validator(mode="after")
    def _orders_are_contiguous(self) -> "GenerationRequest":
        check_contiguous_order(self.destinations)
        return self


# ============================================================
# PART 5: PROGRESS SNAPSHOTS (tagged union on "type")
# ============================================================

class _ProgressBase(WireModel):
    status: str
    progress: int = Field(0, ge=0, le=100)
    message: str = ""
    updated_at: datetime = Field(default_factory=datetime.now)


class ProcessingProgress(_ProgressBase):
    type: Literal["processing"] = "processing"
    metadata: Optional[TripMetadata] = None
    city: Optional[str] = None
    all_cities: List[CityResult] = Field(default_factory=list)


class QuestionProgress(_ProgressBase):
    type: Literal["question"] = "question"
    missing_fields: List[str] = Field(default_factory=list)
    conversation_context: Optional[str] = None


class ConfirmationProgress(_ProgressBase):
    type: Literal["confirmation"] = "confirmation"
    destinations: List[DestinationSpec] = Field(default_factory=list)
    conversation_context: Optional[str] = None


class CompleteProgress(_ProgressBase):
    type: Literal["complete"] = "complete"
    itinerary: CombinedItinerary
    metadata: Optional[TripMetadata] = None
    all_cities: List[CityResult] = Field(default_factory=list)


class ErrorProgress(_ProgressBase):
    type: Literal["error"] = "error"
    all_cities: List[CityResult] = Field(default_factory=list)
    detail: Optional[str] = None


GenerationProgress = Annotated[
    Union[ProcessingProgress, QuestionProgress, ConfirmationProgress, CompleteProgress, ErrorProgress],
    Field(discriminator="type"),
]

TERMINAL_TYPES = ("complete", "error")


def is_terminal(snapshot: Any) -> bool:
    return getattr(snapshot, "type", None) in TERMINAL_TYPES
