"""
Hybrid travel-intent extractor.

The deterministic destination parser always runs first. The LLM is only
consulted when the parser finds no destinations, or when the classifier
marked the turn ambiguous / conversational. LLM output is validated against
a strict schema; an invalid answer gets one corrective retry, a second
failure becomes a ParseFailure that the dialog graph turns into a
clarifying question.
"""

import re
from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from destination_parser import STOPLIST, ParsedTrip, parse
from errors import InvalidResponse, ParseFailure, UpstreamFailure, ValidationFailure
from input_classifier import ClassificationResult
from llm_client import LLMClient, PromptPayload, complete_with_retry
from preference_parser import PreferenceHints, extract_preferences
from stategraph import (
    ConversationContext,
    ConversationMessage,
    DestinationSpec,
    FlexibleDate,
    InputType,
    TravelIntent,
)
from logger_config import setup_logger

logger = setup_logger(__name__)


# =============================================================================
# Structured Output Models
# =============================================================================

class ExtractedDestination(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="City or region name, properly capitalized")
    day_count: int = Field(..., ge=0, description="Days to spend there, 0 if not stated")
    order: int = Field(..., ge=1, description="1-based visiting order")


class ExtractedIntent(BaseModel):
    """Pydantic model for LLM intent extraction output."""
    model_config = ConfigDict(extra="forbid")

    destinations: List[ExtractedDestination] = Field(..., description="Destinations in visiting order")
    origin: Optional[str] = Field(None, description="Departure city if stated")
    start_date: Optional[str] = Field(None, description="Trip start date, YYYY-MM-DD")
    end_date: Optional[str] = Field(None, description="Trip end date, YYYY-MM-DD")
    date_hint: Optional[str] = Field(None, description="Relative timing such as 'next month'")
    traveler_count: Optional[int] = Field(None, ge=1, description="Number of travelers")
    interests: List[str] = Field(default_factory=list, description="Interest tags such as food, museums")
    budget_hint: Optional[str] = Field(None, description="budget, mid or luxury")
    total_days: Optional[int] = Field(None, ge=0, description="Total trip length if stated")


EXTRACTION_SYSTEM_PROMPT = """You extract structured travel plans from chat messages.

Return ONLY the fields of the schema:
- destinations: every concrete city or region the user wants to visit, in visiting order.
  order must be 1, 2, 3, ... with no gaps. day_count is 0 unless the user gave or clearly implied it.
  Never return generic words ("days", "trip", "from", "then") as a destination.
  Do NOT include the departure city or the city they return home to.
- origin: the departure city, if stated.
- start_date / end_date: ISO dates (YYYY-MM-DD) only when they can be resolved from TODAY.
- date_hint: relative timing phrases you could not resolve to a date.
- interests, budget_hint (budget | mid | luxury), traveler_count, total_days when stated.

If the user is vague ("somewhere warm"), return an empty destinations list rather than guessing."""


# =============================================================================
# Helper Functions
# =============================================================================

REFERENCE_PATTERN = re.compile(r"\b(there|that city|that place|this city|the same (?:city|place))\b", re.IGNORECASE)


def resolve_references(message: str, context: Optional[ConversationContext]) -> str:
    """
    Replace "there" / "that city" with the most recently mentioned unconfirmed
    destination (falling back to the last destination) so the parser can bind it.
    """
    if not context or not context.destinations or not REFERENCE_PATTERN.search(message):
        return message
    ordered = sorted(context.destinations, key=lambda d: d.order)
    unconfirmed = [d for d in ordered if not d.confirmed or d.day_count == 0]
    target = (unconfirmed or ordered)[-1].name

    def _substitute(match: "re.Match[str]") -> str:
        return f"in {target}" if match.group(1).lower() == "there" else target

    resolved = REFERENCE_PATTERN.sub(_substitute, message)
    logger.debug(f"Resolved references: '{message}' -> '{resolved}'")
    return resolved


def _intent_from_parse(parsed: ParsedTrip, prefs: PreferenceHints, source: str = "parser") -> TravelIntent:
    return TravelIntent(
        destinations=parsed.destinations,
        origin=parsed.origin,
        return_to=parsed.return_to,
        start_date=parsed.dates.start_date,
        end_date=parsed.dates.end_date,
        date_hint=parsed.dates.hint,
        traveler_count=prefs.traveler_count,
        preferences=prefs.interests,
        budget_hint=prefs.budget,
        pace=prefs.pace,
        total_days=parsed.total_days,
        stated_total_days=parsed.stated_total_days,
        conflicts=parsed.conflicts,
        source=source,
    )


def _format_history(history: Optional[List[ConversationMessage]], limit: int = 6) -> str:
    if not history:
        return "(none)"
    return "\n".join(f"{m.role}: {m.content}" for m in history[-limit:])


# =============================================================================
# Extractor
# =============================================================================

class TripExtractor:
    """Parser-first travel intent extraction with LLM escalation."""

    def __init__(self, llm: LLMClient, max_llm_retries: Optional[int] = None, retry_delay_base: Optional[float] = None):
        self.llm = llm
        self._retry_kwargs = {}
        if max_llm_retries is not None:
            self._retry_kwargs["max_retries"] = max_llm_retries
        if retry_delay_base is not None:
            self._retry_kwargs["delay_base"] = retry_delay_base

    async def extract(
        self,
        message: str,
        conversation_history: Optional[List[ConversationMessage]] = None,
        search_history: Optional[List[str]] = None,
        context: Optional[ConversationContext] = None,
        classification: Optional[ClassificationResult] = None,
        today: Optional[date] = None,
    ) -> TravelIntent:
        today = today or date.today()
        resolved = resolve_references(message, context)
        parsed = parse(resolved, today)
        prefs = extract_preferences(resolved)

        followup = self._resolve_followup_duration(parsed, prefs, context)
        if followup is not None:
            logger.info(f"Applied follow-up duration to pending destinations: {[d.name for d in followup.destinations]}")
            return followup

        weak_turn = classification is not None and classification.type in (InputType.AMBIGUOUS, InputType.CONVERSATIONAL)
        if parsed.has_destinations and not weak_turn:
            intent = _intent_from_parse(parsed, prefs)
            logger.info(f"Parser extracted {len(intent.destinations)} destination(s), {intent.total_days} days")
        else:
            try:
                intent = await self._extract_with_llm(resolved, parsed, prefs, conversation_history, search_history, context, today)
            except UpstreamFailure as e:
                if not parsed.has_destinations:
                    raise ParseFailure(f"LLM unavailable and parser found no destinations: {e}") from e
                logger.warning(f"LLM extraction unavailable ({e}); using parser result")
                intent = _intent_from_parse(parsed, prefs)

        intent.origin = self._resolve_origin(intent, context, conversation_history, today)
        return intent

    # -------------------------------------------------------------------------
    # Deterministic shortcuts
    # -------------------------------------------------------------------------

    def _resolve_followup_duration(
        self,
        parsed: ParsedTrip,
        prefs: PreferenceHints,
        context: Optional[ConversationContext],
    ) -> Optional[TravelIntent]:
        """A bare "4 days" answering "how many days in X?" applies to the pending destination(s)."""
        if parsed.has_destinations or not parsed.stated_total_days or not context or not context.destinations:
            return None
        ordered = sorted(context.destinations, key=lambda d: d.order)
        pending = [d for d in ordered if d.day_count == 0]
        if not pending:
            return None

        days = parsed.stated_total_days
        if len(pending) == 1:
            updated = [
                d.model_copy(update={"day_count": days, "confirmed": True}) if d is pending[0] else d
                for d in ordered
            ]
        elif len(pending) == len(ordered):
            base, extra = divmod(days, len(ordered))
            updated = [
                d.model_copy(update={"day_count": base + (1 if i < extra else 0), "confirmed": False})
                for i, d in enumerate(ordered)
            ]
        else:
            return None

        intent = _intent_from_parse(parsed, prefs)
        intent.destinations = updated
        intent.total_days = sum(d.day_count for d in updated)
        return intent

    def _resolve_origin(
        self,
        intent: TravelIntent,
        context: Optional[ConversationContext],
        history: Optional[List[ConversationMessage]],
        today: date,
    ) -> Optional[str]:
        if intent.origin:
            return intent.origin
        if context and context.origin:
            return context.origin
        for msg in reversed(history or []):
            if msg.role != "user":
                continue
            origin = parse(msg.content, today).origin
            if origin:
                logger.debug(f"Origin '{origin}' recovered from earlier turn")
                return origin
        return None

    # -------------------------------------------------------------------------
    # LLM escalation
    # -------------------------------------------------------------------------

    def _build_prompt(
        self,
        message: str,
        history: Optional[List[ConversationMessage]],
        search_history: Optional[List[str]],
        context: Optional[ConversationContext],
        today: date,
        correction: Optional[str] = None,
    ) -> PromptPayload:
        known = "(none)"
        if context and context.destinations:
            known = ", ".join(f"{d.name} ({d.day_count} days)" for d in sorted(context.destinations, key=lambda d: d.order))

        user = f"""TODAY: {today.isoformat()}

KNOWN DESTINATIONS SO FAR: {known}

RECENT CONVERSATION:
{_format_history(history)}

RECENT SEARCHES: {", ".join(search_history[-5:]) if search_history else "(none)"}

CURRENT USER MESSAGE:
{message}"""
        if correction:
            user += f"\n\nYOUR PREVIOUS ANSWER WAS REJECTED: {correction}\nFix it and answer again using the schema exactly."
        return PromptPayload(task="extract_intent", system=EXTRACTION_SYSTEM_PROMPT, user=user)

    def _intent_from_llm(self, output: ExtractedIntent, parsed: ParsedTrip, prefs: PreferenceHints) -> TravelIntent:
        parser_counts = {d.name.lower(): d for d in parsed.destinations if d.confirmed}
        destinations = []
        for item in sorted(output.destinations, key=lambda d: d.order):
            name = item.name.strip()
            if not name or name.lower() in STOPLIST:
                raise ValidationFailure(f"'{item.name}' is not a destination name")
            known = parser_counts.get(name.lower())
            destinations.append(DestinationSpec(
                name=name,
                day_count=known.day_count if known else item.day_count,
                order=item.order,
                confirmed=known is not None,
            ))
        if not destinations and parsed.has_destinations:
            destinations = parsed.destinations

        try:
            intent = TravelIntent(
                destinations=destinations,
                origin=parsed.origin or output.origin,
                return_to=parsed.return_to,
                start_date=parsed.dates.start_date or FlexibleDate.parse(output.start_date),
                end_date=parsed.dates.end_date or FlexibleDate.parse(output.end_date),
                date_hint=parsed.dates.hint or output.date_hint,
                traveler_count=prefs.traveler_count or output.traveler_count,
                preferences=list(dict.fromkeys(prefs.interests + [i.lower() for i in output.interests])),
                budget_hint=prefs.budget or output.budget_hint,
                pace=prefs.pace,
                total_days=sum(d.day_count for d in destinations),
                stated_total_days=parsed.stated_total_days or output.total_days,
                conflicts=parsed.conflicts,
                source="hybrid" if parsed.has_destinations else "llm",
            )
        except ValidationError as e:
            raise ValidationFailure(str(e)) from e
        return intent

    async def _extract_with_llm(
        self,
        message: str,
        parsed: ParsedTrip,
        prefs: PreferenceHints,
        history: Optional[List[ConversationMessage]],
        search_history: Optional[List[str]],
        context: Optional[ConversationContext],
        today: date,
    ) -> TravelIntent:
        correction = None
        for attempt in range(2):
            prompt = self._build_prompt(message, history, search_history, context, today, correction)
            try:
                output = await complete_with_retry(self.llm, prompt, ExtractedIntent, **self._retry_kwargs)
                intent = self._intent_from_llm(output, parsed, prefs)
                logger.info(f"LLM extracted {len(intent.destinations)} destination(s) (attempt {attempt + 1})")
                return intent
            except (InvalidResponse, ValidationFailure) as e:
                correction = str(e)
                logger.warning(f"LLM extraction rejected on attempt {attempt + 1}: {e}")

        raise ParseFailure("Could not extract destinations after a corrective retry")
