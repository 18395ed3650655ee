"""
Input classifier for chat turns.

Labels each incoming message as structured / modification / question /
conversational / ambiguous so the dialog graph can pick the right handler.
Rules are applied in priority order and err on the side of `ambiguous`:
an ambiguous turn costs one clarifying question, a wrong confident guess
costs a wrong itinerary.
"""

import re
from dataclasses import dataclass
from typing import Optional

from destination_parser import is_vague_region, parse
from stategraph import ConversationContext, InputType
from logger_config import setup_logger

logger = setup_logger(__name__)


# =============================================================================
# Patterns
# =============================================================================

MODIFICATION_PATTERNS = [
    re.compile(r"\b(?:add|remove|change|modify|update|extend|shorten|drop|delete)\b", re.IGNORECASE),
    re.compile(r"\bmake\s+it\b", re.IGNORECASE),
    re.compile(r"\binstead\s+of\b", re.IGNORECASE),
    re.compile(r"\b(?:switch|swap|replace|skip)\b", re.IGNORECASE),
    re.compile(r"\b(?:more|fewer|less)\s+days?\b", re.IGNORECASE),
    re.compile(r"\bone\s+more\s+day\b", re.IGNORECASE),
]

QUESTION_START = re.compile(
    r"^(?:what|when|where|how|why|which|who|is|are|can|could|should|would|will|do|does|did)\b",
    re.IGNORECASE,
)

# "Can you plan ..." / "Could you make ..." are requests phrased as questions
REQUEST_AS_QUESTION = re.compile(r"^(?:can|could|would|will)\s+you\s+(?:plan|make|create|build|give)\b", re.IGNORECASE)

PREFERENCE_PATTERNS = [
    re.compile(r"\b(?:romantic|relaxing|relaxed|adventurous|adventure|cultural|culture|foodie|food|beach|beaches|nightlife|nature|hiking|luxury|budget|cheap|family|quiet|warm|sunny|cold|snow|historic|history|art|museums?)\b", re.IGNORECASE),
    re.compile(r"\bsomewhere\b", re.IGNORECASE),
    re.compile(r"^(?:i|we)\s+(?:want|need|would like|'d like|prefer|love|like)\b", re.IGNORECASE),
    re.compile(r"^(?:i'm|i am|we're|we are)\s+(?:thinking|looking|planning)\b", re.IGNORECASE),
    re.compile(r"^how\s+about\b", re.IGNORECASE),
]

AFFIRMATIVE = re.compile(r"^(?:yes|yeah|yep|yup|sure|ok|okay|sounds good|looks good|perfect|great|go ahead|do it|confirm(?:ed)?|correct|that's right|that works)\b", re.IGNORECASE)
NEGATIVE = re.compile(r"^(?:no|nope|nah|not really|wait|hold on)\b", re.IGNORECASE)

SEQUENCE_WORDS = re.compile(r"\b(?:then|after that|followed by|and then)\b", re.IGNORECASE)


# =============================================================================
# Result
# =============================================================================

@dataclass
class ClassificationResult:
    type: InputType
    confidence: float
    has_destinations: bool = False
    has_dates: bool = False
    affirmation: Optional[bool] = None
    complexity: str = "simple"
    reason: str = ""


def _complexity(destination_count: int, message: str) -> str:
    if destination_count >= 3 or (destination_count >= 2 and SEQUENCE_WORDS.search(message)):
        return "complex"
    if destination_count == 2:
        return "multi_city"
    return "simple"


def _is_question(message: str) -> bool:
    stripped = message.strip()
    if REQUEST_AS_QUESTION.search(stripped):
        return False
    return stripped.endswith("?") or bool(QUESTION_START.search(stripped))


# =============================================================================
# Public API
# =============================================================================

def classify(message: str, context: Optional[ConversationContext] = None) -> ClassificationResult:
    """
    Classify one chat message against the current conversation context.

    Priority:
    1. structured   - place + day count and no itinerary yet
    2. modification - itinerary exists and an edit verb is present
    3. question     - starts with a question word or ends with "?"
    4. conversational - style/mood preference, or a yes/no reply
    5. ambiguous    - anything else
    """
    context = context or ConversationContext()
    text = (message or "").strip()
    if not text:
        return ClassificationResult(InputType.AMBIGUOUS, 0.0, reason="empty message")

    parsed = parse(text)
    concrete = [d for d in parsed.destinations if not is_vague_region(d.name)]
    has_places = bool(concrete)
    has_counts = any(d.day_count > 0 for d in concrete)
    has_dates = not parsed.dates.is_empty
    complexity = _complexity(len(concrete), text)
    is_modification = any(p.search(text) for p in MODIFICATION_PATTERNS)

    def result(kind: InputType, confidence: float, reason: str, affirmation: Optional[bool] = None):
        classification = ClassificationResult(
            type=kind,
            confidence=confidence,
            has_destinations=has_places,
            has_dates=has_dates,
            affirmation=affirmation,
            complexity=complexity,
            reason=reason,
        )
        logger.debug(f"Classified '{text[:60]}' as {kind.value} ({confidence:.2f}): {reason}")
        return classification

    # 1. Structured request
    if has_places and has_counts and not context.has_itinerary:
        return result(InputType.STRUCTURED, 0.9, "place with day count")

    # 2. Modification of an existing itinerary
    if context.has_itinerary and is_modification:
        return result(InputType.MODIFICATION, 0.85, "edit verb with existing itinerary")

    # A fresh place + count request while an itinerary exists is a new plan
    if has_places and has_counts:
        return result(InputType.STRUCTURED, 0.7, "new request over existing itinerary")

    # 3. Question
    if _is_question(text):
        return result(InputType.QUESTION, 0.85, "interrogative")

    # 4. Conversational: yes/no replies, then style / mood preferences
    if AFFIRMATIVE.search(text):
        confidence = 0.8 if context.phase.value == "confirming" else 0.6
        return result(InputType.CONVERSATIONAL, confidence, "affirmative reply", affirmation=True)
    if NEGATIVE.search(text) and not is_modification:
        confidence = 0.8 if context.phase.value == "confirming" else 0.5
        return result(InputType.CONVERSATIONAL, confidence, "negative reply", affirmation=False)
    if any(p.search(text) for p in PREFERENCE_PATTERNS):
        return result(InputType.CONVERSATIONAL, 0.6, "preference without place/day data")

    # Follow-up that names places or counts for an ongoing plan
    if context.destinations and (has_places or has_counts or parsed.stated_total_days):
        return result(InputType.CONVERSATIONAL, 0.55, "follow-up detail for current plan")

    # 5. Ambiguous: bare place, bare duration, vague region, or nothing recognizable
    return result(InputType.AMBIGUOUS, 0.3, "no strong signal")
