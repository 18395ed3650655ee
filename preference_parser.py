"""
Preference extraction: interests, budget level, pace, traveler count and
must-see / avoid lists from free text.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional


INTEREST_KEYWORDS = [
    "culture", "history", "food", "adventure", "relaxation", "nightlife",
    "shopping", "nature", "architecture", "museums", "beaches", "hiking",
    "photography", "local cuisine", "wine", "art", "music", "festivals",
    "sports", "wellness", "spa", "family", "romantic", "backpacking",
    "outdoor", "urban", "coastal", "mountain", "desert", "wildlife",
]

COMPOUND_INTERESTS = {
    "food and wine": ["food", "wine"],
    "art and culture": ["art", "culture"],
    "sun and beach": ["beaches", "relaxation"],
    "beach": ["beaches"],
    "museum": ["museums"],
    "hike": ["hiking"],
}

BUDGET_KEYWORDS = {
    "budget": ["budget", "cheap", "affordable", "economical", "low-cost", "hostel", "backpack"],
    "mid": ["mid-range", "midrange", "moderately priced", "standard", "comfortable"],
    "luxury": ["luxury", "luxurious", "premium", "high-end", "first-class", "exclusive", "upscale"],
}

PACE_KEYWORDS = {
    "relaxed": ["relaxed", "relaxing", "slow", "leisurely", "chill", "laid-back", "easy-going"],
    "moderate": ["moderate pace", "balanced", "normal pace"],
    "packed": ["packed", "busy", "intensive", "fast-paced", "action-packed", "see everything"],
}

WORD_NUMBERS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}

_COUNT = r"(\d+|" + "|".join(WORD_NUMBERS) + r")"
ADULTS = re.compile(rf"\b{_COUNT}\s+(?:adults?|people|persons?|pax|travell?ers?|friends|guests)\b", re.IGNORECASE)
CHILDREN = re.compile(rf"\b{_COUNT}\s+(?:children|kids?|child)\b", re.IGNORECASE)
FAMILY = re.compile(rf"\bfamily of {_COUNT}\b", re.IGNORECASE)
COUPLE = re.compile(r"\b(?:couple|two of us|honeymoon|me and my (?:wife|husband|partner|girlfriend|boyfriend))\b", re.IGNORECASE)
SOLO = re.compile(r"\b(?:solo|alone|by myself|just me)\b", re.IGNORECASE)
AVOID = re.compile(r"\b(?:avoid|not into|hate|no more)\s+([a-z][a-z\s\-]{2,30}?)(?:[.,;!]|\band\b|$)", re.IGNORECASE)
MUST_SEE = re.compile(r"\b(?:must see|must-see|must visit|definitely see|want to see)\s+(?:the\s+)?([A-Za-z][\w\s'\-]{2,40}?)(?:[.,;!]|\band\b|$)", re.IGNORECASE)
DOLLARS = re.compile(r"(?<![\w$])(\${1,4})(?![\d\w])")


@dataclass
class PreferenceHints:
    interests: List[str] = field(default_factory=list)
    budget: Optional[str] = None
    pace: Optional[str] = None
    traveler_count: Optional[int] = None
    must_see: List[str] = field(default_factory=list)
    avoid: List[str] = field(default_factory=list)

    def as_map(self) -> Dict[str, str]:
        """Flatten into the string map kept on ConversationContext.preferences."""
        prefs: Dict[str, str] = {}
        if self.interests:
            prefs["interests"] = ", ".join(self.interests)
        if self.budget:
            prefs["budget"] = self.budget
        if self.pace:
            prefs["pace"] = self.pace
        if self.must_see:
            prefs["must_see"] = ", ".join(self.must_see)
        if self.avoid:
            prefs["avoid"] = ", ".join(self.avoid)
        return prefs


def _to_int(token: str) -> int:
    token = token.lower()
    return WORD_NUMBERS[token] if token in WORD_NUMBERS else int(token)


def extract_interests(text: str) -> List[str]:
    lower = text.lower()
    found: List[str] = []
    for interest in INTEREST_KEYWORDS:
        if re.search(rf"\b{re.escape(interest)}\b", lower):
            found.append(interest)
    for phrase, interests in COMPOUND_INTERESTS.items():
        if re.search(rf"\b{re.escape(phrase)}", lower):
            found.extend(interests)
    return list(dict.fromkeys(found))


def extract_budget(text: str) -> Optional[str]:
    lower = text.lower()
    for level, keywords in BUDGET_KEYWORDS.items():
        for keyword in keywords:
            if re.search(rf"\b{re.escape(keyword)}\b", lower):
                return level
    match = DOLLARS.search(text)
    if match:
        signs = len(match.group(1))
        if signs == 1:
            return "budget"
        if signs == 2:
            return "mid"
        return "luxury"
    return None


def extract_pace(text: str) -> Optional[str]:
    lower = text.lower()
    for pace, keywords in PACE_KEYWORDS.items():
        for keyword in keywords:
            if keyword in lower:
                return pace
    return None


def extract_traveler_count(text: str) -> Optional[int]:
    if SOLO.search(text):
        return 1
    family = FAMILY.search(text)
    if family:
        return _to_int(family.group(1))
    adults = ADULTS.search(text)
    children = CHILDREN.search(text)
    if adults or children:
        total = _to_int(adults.group(1)) if adults else 1
        if children:
            total += _to_int(children.group(1))
        return total
    if COUPLE.search(text):
        return 2
    return None


def extract_preferences(text: str) -> PreferenceHints:
    if not text:
        return PreferenceHints()
    avoid = [m.group(1).strip() for m in AVOID.finditer(text)]
    must_see = [m.group(1).strip() for m in MUST_SEE.finditer(text)]
    return PreferenceHints(
        interests=extract_interests(text),
        budget=extract_budget(text),
        pace=extract_pace(text),
        traveler_count=extract_traveler_count(text),
        must_see=must_see,
        avoid=avoid,
    )
