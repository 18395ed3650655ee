"""
Conversation State Manager

In-memory, per-session store of accumulated travel context:
- destinations, origin, dates, preferences and constraints
- conversation phase and last classified intent
- append-only message log
- current itinerary plus the last few superseded ones

Sessions expire SESSION_TTL_HOURS after their last activity. Expiry is checked
lazily on read and by `sweep()`, which the API runs periodically. The store
is an explicit object with an injectable clock so tests can build isolated
instances and move time forward.
"""

import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

import config
from errors import StateExpired
from stategraph import (
    CombinedItinerary,
    ConversationContext,
    ConversationMessage,
    ConversationMetadata,
    ConversationState,
    DestinationSpec,
    InputType,
    Phase,
    TravelConstraint,
)
from logger_config import setup_logger

logger = setup_logger(__name__)


# =============================================================================
# Context merge
# =============================================================================

def merge_context(context: ConversationContext, updates: Dict[str, Any]) -> ConversationContext:
    """
    Merge updates into the context in place, field by field.

    - scalars overwrite when the new value is not None
    - destinations are replaced as a whole
    - constraints are appended (duplicates skipped)
    - preferences are merged key by key
    """
    for key, value in updates.items():
        if key not in ConversationContext.model_fields:
            logger.warning(f"Ignoring unknown context field: {key}")
            continue
        if value is None:
            continue

        if key == "destinations":
            context.destinations = [
                d if isinstance(d, DestinationSpec) else DestinationSpec.model_validate(d) for d in value
            ]
        elif key == "constraints":
            existing = {(c.kind, c.value.lower()) for c in context.constraints}
            for raw in value:
                constraint = raw if isinstance(raw, TravelConstraint) else TravelConstraint.model_validate(raw)
                if (constraint.kind, constraint.value.lower()) not in existing:
                    context.constraints.append(constraint)
                    existing.add((constraint.kind, constraint.value.lower()))
        elif key == "preferences":
            for pref_key, pref_value in value.items():
                if pref_value is not None and pref_value != "":
                    context.preferences[pref_key] = str(pref_value)
        else:
            setattr(context, key, value)
    return context


def apply_phase_transition(context: ConversationContext, classification: InputType) -> None:
    previous = context.phase
    if classification in (InputType.STRUCTURED, InputType.CONVERSATIONAL) and previous == Phase.INITIAL:
        context.phase = Phase.PLANNING
    elif classification == InputType.MODIFICATION:
        if context.has_itinerary:
            context.phase = Phase.MODIFYING
        else:
            logger.warning("Modification received without an itinerary; phase unchanged")
    context.last_intent = classification
    if context.phase != previous:
        logger.info(f"Phase transition: {previous.value} -> {context.phase.value}")


# =============================================================================
# Serialization of the client-held context string
# =============================================================================

def serialize_context(context: ConversationContext) -> str:
    return context.model_dump_json(by_alias=True)


def restore_context(raw: Optional[str]) -> Optional[ConversationContext]:
    """Parse a conversationContext string sent back by the client. Invalid input yields None."""
    if not raw:
        return None
    try:
        return ConversationContext.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        logger.warning(f"Ignoring unparseable conversationContext: {e}")
        return None


# =============================================================================
# Manager
# =============================================================================

class ConversationStateManager:
    """Per-session conversation store with TTL expiry."""

    def __init__(
        self,
        ttl: timedelta = timedelta(hours=config.SESSION_TTL_HOURS),
        clock: Optional[Callable[[], datetime]] = None,
        history_limit: int = config.ITINERARY_HISTORY_LIMIT,
    ):
        self.ttl = ttl
        self.clock = clock or datetime.now
        self.history_limit = history_limit
        self._sessions: Dict[str, ConversationState] = {}

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def _is_expired(self, state: ConversationState, now: datetime) -> bool:
        return now - state.metadata.last_activity > self.ttl

    def _load(self, session_id: str) -> Optional[ConversationState]:
        state = self._sessions.get(session_id)
        if state is None:
            return None
        if self._is_expired(state, self.clock()):
            del self._sessions[session_id]
            raise StateExpired(session_id)
        return state

    def _create(self, session_id: str) -> ConversationState:
        now = self.clock()
        state = ConversationState(
            session_id=session_id,
            metadata=ConversationMetadata(start_time=now, last_activity=now),
        )
        self._sessions[session_id] = state
        logger.info(f"Created conversation state for session {session_id}")
        return state

    def get(self, session_id: str) -> Optional[ConversationState]:
        try:
            return self._load(session_id)
        except StateExpired as e:
            logger.info(str(e))
            return None

    def get_or_create(self, session_id: str) -> ConversationState:
        """Never fails: returns the live state, or a fresh one if absent or expired."""
        try:
            state = self._load(session_id)
        except StateExpired as e:
            logger.warning(f"{e}; starting a fresh conversation")
            state = None
        if state is None:
            state = self._create(session_id)
        return state

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def update(
        self,
        session_id: str,
        message: Optional[ConversationMessage] = None,
        itinerary: Optional[CombinedItinerary] = None,
        context_updates: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> ConversationState:
        state = self.get_or_create(session_id)

        if message is not None:
            state.messages.append(message)
            state.metadata.message_count += 1
            if message.role == "user" and message.classification is not None:
                apply_phase_transition(state.context, message.classification)

        if context_updates:
            merge_context(state.context, context_updates)

        if itinerary is not None:
            if state.current_itinerary is not None:
                state.itinerary_history.append(state.current_itinerary)
                state.itinerary_history = state.itinerary_history[-self.history_limit:]
            state.current_itinerary = itinerary
            state.context.has_itinerary = True
            state.context.phase = Phase.FINALIZING

        if error:
            state.metadata.errors.append(error)

        state.metadata.last_activity = self.clock()
        return state

    def add_message(
        self,
        session_id: str,
        role: str,
        content: str,
        classification: Optional[InputType] = None,
    ) -> ConversationState:
        message = ConversationMessage(
            role=role,
            content=content,
            timestamp=self.clock(),
            classification=classification,
        )
        return self.update(session_id, message=message)

    def restore(self, session_id: str, context: ConversationContext) -> ConversationState:
        """Seed a session that has no history from a client-held context."""
        state = self.get_or_create(session_id)
        if not state.messages:
            state.context = context
            logger.info(f"Restored context for session {session_id} from client payload")
        return state

    def clear(self, session_id: str) -> bool:
        if session_id in self._sessions:
            del self._sessions[session_id]
            logger.info(f"Cleared conversation state for session {session_id}")
            return True
        return False

    def sweep(self) -> int:
        """Evict every expired session. Returns the number removed."""
        now = self.clock()
        expired = [sid for sid, state in self._sessions.items() if self._is_expired(state, now)]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info(f"Swept {len(expired)} expired conversation(s)")
        return len(expired)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def active_sessions(self) -> List[str]:
        now = self.clock()
        return [sid for sid, state in self._sessions.items() if not self._is_expired(state, now)]

    def stats(self) -> Dict[str, Any]:
        active = [self._sessions[sid] for sid in self.active_sessions()]
        phases: Dict[str, int] = {}
        for state in active:
            phases[state.context.phase.value] = phases.get(state.context.phase.value, 0) + 1
        return {
            "active_sessions": len(active),
            "total_messages": sum(s.metadata.message_count for s in active),
            "with_itinerary": sum(1 for s in active if s.current_itinerary is not None),
            "phases": phases,
        }


# =============================================================================
# Prompt helpers
# =============================================================================

def recent_messages(state: ConversationState, limit: int = config.MAX_HISTORY_MESSAGES) -> List[ConversationMessage]:
    """Last `limit` messages, always keeping the opening message for context."""
    messages = state.messages
    if len(messages) <= limit:
        return list(messages)
    return [messages[0]] + list(messages[-(limit - 1):])


def build_context_prompt(state: ConversationState, max_messages: int = 10) -> str:
    """Build context string from state for LLM prompts."""
    context = state.context
    parts = []

    if context.destinations or context.origin or context.start_date or context.preferences:
        parts.append("Trip Requirements:")
        for dest in sorted(context.destinations, key=lambda d: d.order):
            days = f"{dest.day_count} days" if dest.day_count else "days not set"
            status = "confirmed" if dest.confirmed else "unconfirmed"
            parts.append(f"  - Destination {dest.order}: {dest.name} ({days}, {status})")
        if context.origin:
            parts.append(f"  - Origin: {context.origin}")
        if context.start_date:
            parts.append(f"  - Start Date: {context.start_date.isoformat()}")
        elif context.date_hint:
            parts.append(f"  - Timing: {context.date_hint}")
        if context.traveler_count:
            parts.append(f"  - Travelers: {context.traveler_count}")
        for key, value in context.preferences.items():
            parts.append(f"  - {key.replace('_', ' ').title()}: {value}")
        for constraint in context.constraints:
            parts.append(f"  - Constraint ({constraint.kind}): {constraint.value}")

    parts.append(f"\nCurrent Phase: {context.phase.value}")

    if state.current_itinerary is not None:
        itinerary = state.current_itinerary
        parts.append(f"\nCurrent Itinerary: {itinerary.title} ({itinerary.total_days} days, {itinerary.destination})")

    history = recent_messages(state, max_messages)
    if history:
        parts.append("\nRecent Conversation:")
        for msg in history:
            parts.append(f"  {msg.role}: {msg.content}")

    return "\n".join(parts)


def summarize(state: ConversationState) -> str:
    """One-line human summary of where the conversation stands."""
    context = state.context
    if not context.destinations:
        return f"No destinations yet ({state.metadata.message_count} messages, phase {context.phase.value})"
    stops = ", ".join(
        f"{d.name} ({d.day_count}d)" if d.day_count else d.name
        for d in sorted(context.destinations, key=lambda d: d.order)
    )
    total = sum(d.day_count for d in context.destinations)
    summary = f"{stops}; {total} days total; phase {context.phase.value}"
    if context.origin:
        summary = f"From {context.origin}: {summary}"
    if state.current_itinerary is not None:
        summary += "; itinerary ready"
    return summary
