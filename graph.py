"""
LangGraph Definition for the Trip Planner dialog

Graph Structure:
- Entry: classify (rule-based input classifier)
- Conditional Edge: routes to ONE of three handler nodes
- Handlers: extract, modify, answer_question
- extract / modify feed decide, which picks question / confirmation / ready
- answer_question ends

Conversation memory lives in ConversationStateManager, not in a LangGraph
checkpointer: each turn runs on a copy of the session context and the
result is merged back by DialogController.process_turn.
"""

import re
from datetime import date, timedelta
from typing import Any, Dict, List, Literal, Optional, TypedDict

from langgraph.graph import StateGraph, END
from pydantic import BaseModel, Field

import config
from conversation_state import (
    ConversationStateManager,
    apply_phase_transition,
    build_context_prompt,
    restore_context,
    serialize_context,
)
from destination_parser import NUMBER_WORDS, STOPLIST, is_vague_region, parse
from errors import ParseFailure, UpstreamFailure, ValidationFailure
from input_classifier import ClassificationResult, classify
from llm_client import LLMClient, PromptPayload, complete_with_retry
from preference_parser import extract_preferences
from stategraph import (
    ConversationContext,
    ConversationMessage,
    ConversationState,
    DestinationSpec,
    GenerationRequest,
    InputType,
    Phase,
    TravelConstraint,
    TravelIntent,
    WireModel,
)
from trip_extractor import TripExtractor
from logger_config import setup_logger

logger = setup_logger(__name__)


# =============================================================================
# Graph State
# =============================================================================

class DialogState(TypedDict, total=False):
    session_id: str
    message: str
    today: date
    conversation: ConversationState      # read-only view of the stored session
    context: ConversationContext         # working copy, merged back after the turn
    classification: ClassificationResult
    intent: Optional[TravelIntent]
    changes: List[str]
    response_type: Optional[str]
    response_message: str
    missing_fields: List[str]
    generation_request: Optional[GenerationRequest]
    errors: List[str]


class TurnResult(WireModel):
    response_type: Literal["question", "confirmation", "ready"]
    message: str
    missing_fields: List[str] = Field(default_factory=list)
    destinations: List[DestinationSpec] = Field(default_factory=list)
    generation_request: Optional[GenerationRequest] = None
    conversation_context: str
    classification: Optional[InputType] = None


# =============================================================================
# Structured Output Models
# =============================================================================

class AnswerOutput(BaseModel):
    """Pydantic model for the question-answering node output."""
    answer: str = Field(..., description="Short, helpful answer for the traveler")


ANSWER_SYSTEM_PROMPT = """You are a friendly travel planning assistant.
Answer the traveler's question briefly (2-4 sentences) using the trip context you are given.
If the trip is still missing destinations or day counts, end by asking for the missing piece.
Never invent bookings, prices or availability."""


# =============================================================================
# Helper Functions
# =============================================================================

def _ordered(destinations: List[DestinationSpec]) -> List[DestinationSpec]:
    return sorted(destinations, key=lambda d: d.order)


def _reorder(destinations: List[DestinationSpec]) -> List[DestinationSpec]:
    """Assign orders 1..n by list position."""
    return [d.model_copy(update={"order": i}) for i, d in enumerate(destinations, start=1)]


def _join_names(names: List[str]) -> str:
    if len(names) <= 1:
        return "".join(names)
    return f"{', '.join(names[:-1])} and {names[-1]}"


def describe_stops(destinations: List[DestinationSpec]) -> str:
    return _join_names([
        f"{d.name} ({d.day_count} day{'s' if d.day_count != 1 else ''})" for d in _ordered(destinations)
    ])


CONTINUATION = re.compile(r"^\s*(?:and\s+)?(?:then|also|after\s+that|afterwards|plus)\b", re.IGNORECASE)


def merge_destinations(
    existing: List[DestinationSpec],
    new: List[DestinationSpec],
    kind: InputType,
    append: bool = False,
) -> List[DestinationSpec]:
    """
    Combine newly extracted destinations with the ones already in context.

    - nothing known yet: take the new list
    - new names all known: update their day counts, keep the rest
    - structured request naming other places: replace the plan, unless
      `append` is set ("then 3 days in Rome")
    - otherwise: known places updated, unknown ones appended
    """
    if not new:
        return existing
    existing = _ordered(existing)
    if any(not is_vague_region(d.name) for d in new):
        # "Europe" was a placeholder until concrete places arrive
        existing = [d for d in existing if not is_vague_region(d.name)]
    if not existing:
        return _reorder(_ordered(new))

    by_name = {d.name.lower(): d for d in new}
    known = {d.name.lower() for d in existing}

    if kind == InputType.STRUCTURED and not append and not set(by_name) <= known:
        return _reorder(_ordered(new))

    merged = []
    for dest in existing:
        update = by_name.get(dest.name.lower())
        if update is not None and update.day_count > 0:
            dest = dest.model_copy(update={"day_count": update.day_count, "confirmed": update.confirmed})
        merged.append(dest)
    merged.extend(d for d in _ordered(new) if d.name.lower() not in known)
    return _reorder(merged)


def apply_intent(context: ConversationContext, intent: TravelIntent, kind: InputType, message: str) -> ConversationContext:
    """Fold one extracted TravelIntent into the working context."""
    if intent.destinations:
        append = bool(CONTINUATION.match(message))
        context.destinations = merge_destinations(context.destinations, intent.destinations, kind, append)
        context.pending_conflicts = list(intent.conflicts)
        if len(context.destinations) > config.MAX_DESTINATIONS:
            logger.warning(f"Trimming {len(context.destinations)} destinations to {config.MAX_DESTINATIONS}")
            context.destinations = context.destinations[:config.MAX_DESTINATIONS]
            context.pending_conflicts.append(
                f"I can plan up to {config.MAX_DESTINATIONS} destinations per trip, so I kept the first {config.MAX_DESTINATIONS}."
            )

    for field_name in ("origin", "start_date", "end_date", "date_hint", "traveler_count"):
        value = getattr(intent, field_name)
        if value is not None:
            setattr(context, field_name, value)

    if intent.preferences:
        interests = [i for i in context.preferences.get("interests", "").split(", ") if i]
        context.preferences["interests"] = ", ".join(dict.fromkeys(interests + intent.preferences))
    if intent.budget_hint:
        context.preferences["budget"] = intent.budget_hint
    if intent.pace:
        context.preferences["pace"] = intent.pace

    hints = extract_preferences(message)
    new_constraints = [TravelConstraint(kind="avoid", value=v) for v in hints.avoid]
    new_constraints += [TravelConstraint(kind="must_see", value=v) for v in hints.must_see]
    seen = {(c.kind, c.value.lower()) for c in context.constraints}
    for constraint in new_constraints:
        if (constraint.kind, constraint.value.lower()) not in seen:
            context.constraints.append(constraint)
            seen.add((constraint.kind, constraint.value.lower()))

    context.total_days = sum(d.day_count for d in context.destinations)
    return context


# =============================================================================
# Itinerary modification rules
# =============================================================================

_NUM = r"(?P<n>\d+|" + "|".join(sorted(NUMBER_WORDS, key=len, reverse=True)) + r")"
_PLACE = r"(?P<place>[A-Za-z][\w'\- ]*?)"
_END = r"(?=\s*(?:[.,!?;]|\b(?:and|instead)\b|$))"
_NEW = r"(?P<new>[A-Za-z][\w'\-]*(?:\s+[A-Za-z][\w'\-]*)*?)"

SHORTEN_BY = re.compile(rf"\b(?:shorten|cut|reduce|trim)\s+{_PLACE}\s+by\s+{_NUM}\s+days?\b", re.IGNORECASE)
FEWER_DAYS = re.compile(rf"\b(?:remove|drop|cut|take|subtract)\s+{_NUM}\s+days?\s+(?:from|in|off|at)\s+{_PLACE}{_END}", re.IGNORECASE)
EXTEND_BY = re.compile(rf"\b(?:extend|lengthen)\s+{_PLACE}\s+by\s+{_NUM}\s+(?:more\s+|extra\s+)?days?\b", re.IGNORECASE)
MORE_DAYS = re.compile(rf"\b(?:add\s+)?{_NUM}\s+(?:more|extra)\s+days?\s+(?:in|to|at|for)\s+{_PLACE}{_END}", re.IGNORECASE)
ADD_DAYS = re.compile(rf"\badd\s+{_NUM}\s+days?\s+(?:in|to|at|for)\s+{_PLACE}{_END}", re.IGNORECASE)
MAKE_IT_PLACE = re.compile(rf"\bmake\s+it\s+{_NUM}\s+days?\s+(?:in|for|at)\s+{_PLACE}{_END}", re.IGNORECASE)
MAKE_IT_TOTAL = re.compile(rf"\bmake\s+it\s+(?:a\s+)?{_NUM}[\s\-]+days?\b(?!\s+(?:in|for|at)\b)", re.IGNORECASE)
SWAP_PLACE = re.compile(rf"\b(?:swap|switch|replace|substitute)\s+(?:out\s+)?{_PLACE}\s+(?:with|for|to)\s+{_NEW}{_END}", re.IGNORECASE)
INSTEAD_OF = re.compile(rf"(?P<new>[A-Z][\w'\-]*(?:\s+[A-Z][\w'\-]*)*)\s+instead\s+of\s+{_PLACE}{_END}")
SET_DAYS = re.compile(rf"\b(?:make|change|set)\s+{_PLACE}\s+(?:to\s+|into\s+)?{_NUM}\s+days?\b", re.IGNORECASE)
REMOVE_PLACE = re.compile(rf"\b(?:remove|drop|skip|delete|cut)\s+(?:the\s+)?{_PLACE}{_END}", re.IGNORECASE)
ADD_VERB = re.compile(r"\badd\b", re.IGNORECASE)
ADD_PLACE = re.compile(r"\b[Aa]dd\s+(?:a\s+(?:stop|visit)\s+(?:in|to)\s+)?(?P<place>[A-Z][\w'\-]*(?:\s+[A-Z][\w'\-]*)*)")


def _to_days(token: str) -> int:
    token = token.lower()
    return int(token) if token.isdigit() else NUMBER_WORDS.get(token, 0)


def _place_name(raw: str) -> str:
    """Strip leading filler words and title-case an all-lowercase name."""
    words = raw.split()
    while words and words[0].lower() in STOPLIST:
        words.pop(0)
    while words and words[-1].lower() in STOPLIST:
        words.pop()
    name = " ".join(words)
    return name.title() if name.islower() else name


def _rescale(counts: List[int], total: int) -> List[int]:
    """Spread `total` days over the stops in proportion to their current counts, at least 1 each."""
    weights = counts if sum(counts) > 0 else [1] * len(counts)
    raw = [total * w / sum(weights) for w in weights]
    shares = [max(1, int(r)) for r in raw]
    while sum(shares) < total:
        i = max(range(len(shares)), key=lambda k: raw[k] - shares[k])
        shares[i] += 1
    while sum(shares) > total:
        i = max(range(len(shares)), key=lambda k: shares[k])
        shares[i] -= 1
    return shares


def _find_destination(destinations: List[DestinationSpec], fragment: str) -> Optional[DestinationSpec]:
    fragment = fragment.strip().lower()
    if not fragment:
        return None
    for dest in destinations:
        name = dest.name.lower()
        if name == fragment or name in fragment.split(" ") or name in fragment:
            return dest
    return None


def apply_modification(context: ConversationContext, message: str, today: Optional[date] = None) -> List[str]:
    """
    Apply rule-based edits to the planned destinations and preferences.

    Returns a human-readable list of changes. Raises ParseFailure when the
    message contains no edit these rules understand.
    """
    destinations = [d.model_copy() for d in _ordered(context.destinations)]
    changes: List[str] = []
    consumed: List[range] = []

    def overlaps(match: "re.Match[str]") -> bool:
        return any(match.start() in span or span.start in range(match.start(), match.end()) for span in consumed)

    def resize(pattern: "re.Pattern[str]", apply) -> None:
        for match in pattern.finditer(message):
            if overlaps(match):
                continue
            dest = _find_destination(destinations, match.group("place"))
            days = _to_days(match.group("n"))
            if dest is None or days <= 0:
                continue
            before = dest.day_count
            dest.day_count = max(1, apply(before, days))
            dest.confirmed = True
            consumed.append(range(match.start(), match.end()))
            changes.append(f"{dest.name}: {before} -> {dest.day_count} days")

    for pattern in (SWAP_PLACE, INSTEAD_OF):
        for match in pattern.finditer(message):
            if overlaps(match):
                continue
            dest = _find_destination(destinations, match.group("place"))
            new_name = _place_name(match.group("new"))
            if dest is None or not new_name or _find_destination(destinations, new_name) is not None:
                continue
            old_name = dest.name
            dest.name = new_name
            consumed.append(range(match.start(), match.end()))
            changes.append(f"replaced {old_name} with {new_name}")

    resize(MAKE_IT_PLACE, lambda before, n: n)
    resize(SHORTEN_BY, lambda before, n: before - n)
    resize(FEWER_DAYS, lambda before, n: before - n)
    resize(EXTEND_BY, lambda before, n: before + n)
    resize(MORE_DAYS, lambda before, n: before + n)
    resize(ADD_DAYS, lambda before, n: before + n)
    resize(SET_DAYS, lambda before, n: n)

    for match in MAKE_IT_TOTAL.finditer(message):
        total = _to_days(match.group("n"))
        if overlaps(match) or not destinations or total < len(destinations):
            continue
        before = sum(d.day_count for d in destinations)
        for dest, share in zip(destinations, _rescale([d.day_count for d in destinations], total)):
            dest.day_count = share
            # a multi-stop split is a guess until the user confirms it
            dest.confirmed = len(destinations) == 1
        consumed.append(range(match.start(), match.end()))
        changes.append(f"trip length: {before} -> {total} days")

    for match in REMOVE_PLACE.finditer(message):
        if overlaps(match):
            continue
        dest = _find_destination(destinations, match.group("place"))
        if dest is None:
            continue
        if len(destinations) == 1:
            raise ParseFailure(f"Cannot remove {dest.name}: it is the only destination")
        destinations.remove(dest)
        consumed.append(range(match.start(), match.end()))
        changes.append(f"removed {dest.name}")

    if ADD_VERB.search(message):
        known = {d.name.lower() for d in destinations}
        candidates = [d for d in parse(message, today).destinations if not is_vague_region(d.name)]
        if not candidates:
            candidates = [
                DestinationSpec(name=m.group("place"), day_count=0)
                for m in ADD_PLACE.finditer(message)
                if m.group("place").lower() not in STOPLIST
            ]
        for new_dest in candidates:
            if new_dest.name.lower() in known:
                continue
            destinations.append(new_dest.model_copy(update={"confirmed": new_dest.day_count > 0}))
            known.add(new_dest.name.lower())
            changes.append(
                f"added {new_dest.name} ({new_dest.day_count} days)" if new_dest.day_count else f"added {new_dest.name}"
            )

    hints = extract_preferences(message)
    if hints.pace and hints.pace != context.preferences.get("pace"):
        context.preferences["pace"] = hints.pace
        changes.append(f"pace: {hints.pace}")
    if hints.budget and hints.budget != context.preferences.get("budget"):
        context.preferences["budget"] = hints.budget
        changes.append(f"budget: {hints.budget}")

    if not changes:
        raise ParseFailure(f"No recognizable modification in: {message}")

    context.destinations = _reorder(destinations)
    context.total_days = sum(d.day_count for d in context.destinations)
    logger.info(f"Applied modifications: {changes}")
    return changes



# =============================================================================
# Dialog Controller
# =============================================================================

class DialogController:
    """
    Runs one chat turn through the dialog graph and persists the outcome.

    The controller owns no state of its own: conversation context lives in the
    ConversationStateManager, collaborators are injected.
    """

    def __init__(
        self,
        state_manager: ConversationStateManager,
        extractor: TripExtractor,
        llm: LLMClient,
        max_llm_retries: Optional[int] = None,
        retry_delay_base: Optional[float] = None,
    ):
        self.state_manager = state_manager
        self.extractor = extractor
        self.llm = llm
        self._retry_kwargs = {}
        if max_llm_retries is not None:
            self._retry_kwargs["max_retries"] = max_llm_retries
        if retry_delay_base is not None:
            self._retry_kwargs["delay_base"] = retry_delay_base
        self.graph = self.create_graph()

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    def classify_node(self, state: DialogState) -> Dict[str, Any]:
        classification = classify(state["message"], state["context"])
        apply_phase_transition(state["context"], classification.type)
        logger.info(
            f"Turn classified: {classification.type.value} "
            f"(confidence: {classification.confidence}, complexity: {classification.complexity})"
        )
        return {"classification": classification, "context": state["context"]}

    async def extract_node(self, state: DialogState) -> Dict[str, Any]:
        """
        Extract Node

        Confirms or reopens a pending split on a bare yes/no, otherwise runs the
        hybrid extractor and folds the intent into the working context.
        """
        message = state["message"]
        context = state["context"]
        classification = state["classification"]
        errors = list(state.get("errors", []))

        bare_reply = (
            classification.affirmation is not None
            and not classification.has_destinations
            and not re.search(r"\d", message)
        )
        if bare_reply:
            if classification.affirmation:
                if context.destinations and all(d.day_count > 0 for d in context.destinations):
                    context.destinations = [d.model_copy(update={"confirmed": True}) for d in context.destinations]
                    context.pending_conflicts = []
                    if context.phase == Phase.CONFIRMING:
                        context.phase = Phase.PLANNING
                    logger.info("User confirmed the planned destinations")
                return {"context": context}
            if context.phase == Phase.CONFIRMING:
                context.phase = Phase.PLANNING
                return {
                    "context": context,
                    "response_type": "question",
                    "response_message": "No problem. How many days would you like in each place?",
                    "missing_fields": ["day_count"],
                }
            return {"context": context}

        try:
            intent = await self._extract_intent(state)
        except ParseFailure as e:
            logger.warning(f"Extraction failed: {e}")
            errors.append(f"Extraction failed: {e}")
            if context.destinations:
                return {"context": context, "errors": errors}
            return {
                "context": context,
                "errors": errors,
                "response_type": "question",
                "response_message": "I couldn't quite catch where you'd like to go. Which city or country are you thinking of, and for how many days?",
                "missing_fields": ["destinations"],
            }

        apply_intent(context, intent, classification.type, message)
        logger.info(f"Context destinations: {[(d.name, d.day_count, d.confirmed) for d in context.destinations]}")
        return {"context": context, "intent": intent, "errors": errors}

    async def _extract_intent(self, state: DialogState) -> TravelIntent:
        history = list(state["conversation"].messages)
        searches = [m.content for m in history if m.role == "user"][-5:]
        return await self.extractor.extract(
            state["message"],
            conversation_history=history,
            search_history=searches,
            context=state["context"],
            classification=state["classification"],
            today=state["today"],
        )

    async def modify_node(self, state: DialogState) -> Dict[str, Any]:
        """
        Modify Node

        Applies rule-based edits. When no rule matches, the hybrid extractor
        gets a chance: known places take its day counts, new ones are appended.
        """
        context = state["context"]
        try:
            changes = apply_modification(context, state["message"], state["today"])
        except ParseFailure as e:
            logger.warning(f"Modification not understood: {e}")
            try:
                intent = await self._extract_intent(state)
            except ParseFailure as extract_error:
                logger.warning(f"Extractor fallback found nothing: {extract_error}")
                intent = None

            if intent is not None and intent.destinations:
                updated = apply_intent(
                    context.model_copy(deep=True), intent, InputType.CONVERSATIONAL, state["message"]
                )
                before = [(d.name, d.day_count) for d in _ordered(context.destinations)]
                after = [(d.name, d.day_count) for d in _ordered(updated.destinations)]
                if after != before:
                    logger.info(f"Applied modification from extractor: {before} -> {after}")
                    updated.phase = Phase.MODIFYING
                    return {"context": updated, "intent": intent, "changes": [f"plan: {describe_stops(updated.destinations)}"]}

            return {
                "context": context,
                "errors": list(state.get("errors", [])) + [str(e)],
                "response_type": "question",
                "response_message": (
                    "I can add or remove a destination, change the number of days somewhere, "
                    "or adjust the pace or budget. What would you like to change?"
                ),
                "missing_fields": ["modification"],
            }
        context.phase = Phase.MODIFYING
        return {"context": context, "changes": changes}

    async def answer_question_node(self, state: DialogState) -> Dict[str, Any]:
        context = state["context"]
        prompt = PromptPayload(
            task="answer_question",
            system=ANSWER_SYSTEM_PROMPT,
            user=f"TRIP CONTEXT:\n{build_context_prompt(state['conversation'])}\n\nQUESTION:\n{state['message']}",
        )
        try:
            output = await complete_with_retry(self.llm, prompt, AnswerOutput, **self._retry_kwargs)
            answer = output.answer.strip()
        except (UpstreamFailure, ValidationFailure) as e:
            logger.warning(f"Question answering unavailable: {e}")
            answer = ""

        if not answer:
            if context.destinations:
                answer = (
                    f"I can't look that up right now. So far your trip is {describe_stops(context.destinations)}. "
                    "Ask me again in a moment, or tell me what you'd like to change."
                )
            else:
                answer = "I can't look that up right now. Where would you like to travel, and for how many days?"

        missing = []
        if not context.destinations:
            missing.append("destinations")
        missing += [f"day_count:{d.name}" for d in _ordered(context.destinations) if d.day_count == 0]
        return {"response_type": "question", "response_message": answer, "missing_fields": missing}

    def decide_node(self, state: DialogState) -> Dict[str, Any]:
        """
        Decide Node

        Chooses the turn's outcome from the working context:
        question when something is missing, confirmation when a split was
        assumed or the totals disagree, ready otherwise.
        """
        if state.get("response_type"):
            return {}

        context = state["context"]
        destinations = _ordered(context.destinations)

        if not destinations:
            return {
                "response_type": "question",
                "response_message": "Where would you like to travel?",
                "missing_fields": ["destinations"],
            }

        vague = [d.name for d in destinations if is_vague_region(d.name)]
        if vague:
            return {
                "response_type": "question",
                "response_message": f"{vague[0]} is a big place! Which cities or countries there would you like to visit?",
                "missing_fields": ["destinations"],
            }

        missing_days = [d.name for d in destinations if d.day_count == 0]
        if missing_days:
            return {
                "response_type": "question",
                "response_message": f"How many days would you like to spend in {_join_names(missing_days)}?",
                "missing_fields": [f"day_count:{name}" for name in missing_days],
            }

        if context.pending_conflicts or any(not d.confirmed for d in destinations):
            context.phase = Phase.CONFIRMING
            total = sum(d.day_count for d in destinations)
            lines = list(context.pending_conflicts)
            lines.append(f"Here's the plan: {describe_stops(destinations)}, {total} days in total. Does that work for you?")
            return {
                "context": context,
                "response_type": "confirmation",
                "response_message": " ".join(lines),
                "missing_fields": [],
            }

        start_date = context.start_date or state["today"] + timedelta(days=config.DEFAULT_START_OFFSET_DAYS)
        request = GenerationRequest(
            destinations=destinations,
            start_date=start_date,
            preferences=dict(context.preferences),
            origin=context.origin,
            traveler_count=context.traveler_count,
            budget_hint=context.preferences.get("budget"),
        )
        total = sum(d.day_count for d in destinations)
        prefix = "Updated! " if state.get("changes") else "Great! "
        return {
            "response_type": "ready",
            "response_message": f"{prefix}Planning your {total}-day trip: {describe_stops(destinations)}.",
            "missing_fields": [],
            "generation_request": request,
        }

    # -------------------------------------------------------------------------
    # Graph construction
    # -------------------------------------------------------------------------

    def create_graph(self):
        """
        Create and compile the dialog graph.

        Structure:
        - Entry: classify
        - Conditional Edge: routes to extract / modify / answer_question
        - extract, modify -> decide -> END
        - answer_question -> END
        """
        graph = StateGraph(DialogState)

        graph.add_node("classify", self.classify_node)
        graph.add_node("extract", self.extract_node)
        graph.add_node("modify", self.modify_node)
        graph.add_node("answer_question", self.answer_question_node)
        graph.add_node("decide", self.decide_node)

        graph.set_entry_point("classify")

        graph.add_conditional_edges(
            "classify",
            route_by_classification,
            {
                "extract": "extract",
                "modify": "modify",
                "answer_question": "answer_question",
            }
        )

        graph.add_edge("extract", "decide")
        graph.add_edge("modify", "decide")
        graph.add_edge("decide", END)
        graph.add_edge("answer_question", END)

        return graph.compile()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def process_turn(
        self,
        session_id: str,
        message: str,
        conversation_context: Optional[str] = None,
        today: Optional[date] = None,
    ) -> TurnResult:
        today = today or date.today()

        restored = restore_context(conversation_context)
        if restored is not None:
            self.state_manager.restore(session_id, restored)
        conversation = self.state_manager.get_or_create(session_id)

        logger.info(f"Processing turn for session {session_id}: '{message[:80]}'")
        result = await self.graph.ainvoke({
            "session_id": session_id,
            "message": message,
            "today": today,
            "conversation": conversation,
            "context": conversation.context.model_copy(deep=True),
            "changes": [],
            "errors": [],
            "response_type": None,
            "missing_fields": [],
            "generation_request": None,
        })

        classification: ClassificationResult = result["classification"]
        context: ConversationContext = result["context"]
        user_message = ConversationMessage(
            role="user",
            content=message,
            timestamp=self.state_manager.clock(),
            classification=classification.type,
        )
        errors = result.get("errors") or []
        self.state_manager.update(
            session_id,
            message=user_message,
            context_updates=context.model_dump(),
            error="; ".join(errors) or None,
        )
        state = self.state_manager.add_message(session_id, "assistant", result["response_message"])

        turn = TurnResult(
            response_type=result["response_type"],
            message=result["response_message"],
            missing_fields=result.get("missing_fields") or [],
            destinations=_ordered(state.context.destinations),
            generation_request=result.get("generation_request"),
            conversation_context=serialize_context(state.context),
            classification=classification.type,
        )
        logger.info(f"Turn result for session {session_id}: {turn.response_type}")
        return turn


# =============================================================================
# Routing Function
# =============================================================================

def route_by_classification(state: DialogState) -> Literal["extract", "modify", "answer_question"]:
    """Route to appropriate handler based on the turn classification."""
    kind = state["classification"].type

    if kind == InputType.MODIFICATION:
        return "modify"
    elif kind == InputType.QUESTION:
        return "answer_question"
    else:
        return "extract"
