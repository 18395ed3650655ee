"""
Deterministic destination parser.

Turns a free-text trip request into an ordered list of destinations with
day counts, plus origin / return place and date hints:

    parse("5 days in Paris, then 3 days in Rome")
    -> Paris (5 days, order 1), Rome (3 days, order 2), total_days=8

The parser works on a token stream. Day-count phrases ("5 days", "a week",
"two weeks", "long weekend") are bound to the place span right after them
("5 days in Paris", "10 days Lisbon") or, failing that, to the place span in
front of them ("Paris for 5 days"). Place spans are runs of capitalized
tokens and stop at the first stoplist / connective token, so
"21 days in Peru starting from Chicago" yields "Peru", never "Peru starting".

No network, no LLM. When nothing can be extracted confidently the result
has no destinations and total_days == 0; callers escalate from there.
"""

import re
from collections import namedtuple
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Set, Tuple

from date_parser import DateHints, extract_dates
from stategraph import DestinationSpec


# =============================================================================
# Vocabulary
# =============================================================================

NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12, "fourteen": 14, "couple": 2,
}

UNITS = {
    "day": 1, "days": 1, "night": 1, "nights": 1,
    "week": 7, "weeks": 7, "month": 30, "months": 30,
}

MONTH_NAMES = {
    "january", "february", "march", "april", "may", "june", "july", "august",
    "september", "october", "november", "december",
    "jan", "feb", "mar", "apr", "jun", "jul", "aug", "sep", "sept", "oct", "nov", "dec",
}

WEEKDAY_NAMES = {
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
}

# Generic words that can never be (part of) a place name
STOPLIST = {
    # trip vocabulary
    "day", "days", "night", "nights", "week", "weeks", "month", "months",
    "weekend", "weekends", "fortnight", "trip", "trips", "vacation", "holiday",
    "holidays", "travel", "travelling", "traveling", "tour", "journey", "getaway",
    "itinerary", "plan", "planning", "total", "each", "long", "city", "cities",
    "country", "countries", "place", "places", "beach", "somewhere", "anywhere",
    # connectives
    "starting", "start", "from", "then", "after", "next", "followed", "before",
    "and", "or", "but", "with", "in", "to", "at", "for", "the", "of", "on",
    "by", "via", "around", "across", "through", "also", "finally", "first",
    "second", "last", "end", "ending", "back", "return", "returning", "home",
    "leaving", "departing", "flying", "based", "currently", "living",
    # verbs / sentence openers
    "visit", "visiting", "explore", "exploring", "see", "seeing", "go", "going",
    "spend", "spending", "stay", "staying", "want", "would", "like", "love",
    "please", "can", "could", "need", "book", "help", "show", "tell", "give",
    "let", "lets", "let's", "make", "add", "remove", "change", "extend",
    "shorten", "thinking", "about", "maybe", "just", "only", "more", "less",
    "fewer", "some", "any", "hi", "hello", "hey", "yes", "no", "ok", "okay",
    "sure", "thanks", "thank", "what", "where", "when", "how", "why", "which",
    "who", "is", "are", "do", "does", "should", "will", "be", "have", "has",
    "actually", "again", "there", "here", "this", "that", "these", "those",
    # pronouns
    "i", "i'm", "im", "i'd", "i'll", "i've", "we", "we'd", "we'll", "we're",
    "my", "our", "me", "us", "you", "your", "it", "they", "them", "he", "she",
} | set(NUMBER_WORDS) | MONTH_NAMES | WEEKDAY_NAMES

# Lowercase words allowed inside a place name ("Rio de Janeiro")
PARTICLES = {"de", "del", "da", "do", "dos", "das", "la", "le", "el", "of", "am", "sur", "upon"}

# Words allowed between a day-count and the place it binds to
FORWARD_FILLERS = {
    "in", "at", "to", "visiting", "exploring", "around", "across", "through",
    "trip", "holiday", "vacation", "getaway", "stay", "break", "tour", "of", "the",
}

# Words that introduce a place without a day count
MENTION_TRIGGERS = {"to", "in", "visit", "visiting", "explore", "exploring", "see", "seeing"}
SEQUENCE_TRIGGERS = {"then", "followed", "after"}
SEQUENCE_FILLERS = {"by", "that", "to", "in", "visit", "go", "head", "fly", "on", "we", "i", "we'll", "i'll", "off"}

ORIGIN_PREFIXES = {"based", "currently", "living", "live", "staying"}
RETURN_PREFIXES = {"back", "return", "returning", "home"}

VAGUE_REGIONS = {
    "europe", "asia", "africa", "oceania", "antarctica", "scandinavia",
    "south america", "north america", "latin america", "central america",
    "middle east", "southeast asia", "south east asia", "east asia",
    "caribbean", "the caribbean", "mediterranean", "the mediterranean",
    "balkans", "the balkans", "eastern europe", "western europe",
}

# Recognized even when typed in lowercase ("5 days in paris")
KNOWN_PLACES = {
    "london", "paris", "tokyo", "rome", "barcelona", "amsterdam", "berlin",
    "dubai", "singapore", "bangkok", "lisbon", "granada", "madrid", "milan",
    "vienna", "prague", "budapest", "istanbul", "cairo", "sydney", "melbourne",
    "san francisco", "los angeles", "new york", "new york city", "chicago", "miami", "seattle",
    "boston", "toronto", "vancouver", "mexico city", "buenos aires",
    "rio de janeiro", "sao paulo", "lima", "bogota", "athens", "copenhagen",
    "stockholm", "oslo", "helsinki", "reykjavik", "dublin", "edinburgh",
    "munich", "frankfurt", "zurich", "geneva", "brussels", "venice", "florence",
    "naples", "porto", "seville", "valencia", "krakow", "warsaw", "beijing",
    "shanghai", "hong kong", "taipei", "seoul", "osaka", "kyoto", "delhi",
    "mumbai", "bangalore", "jakarta", "manila", "kuala lumpur", "hanoi",
    "marrakech", "cape town", "nairobi", "bali", "cusco",
    "japan", "italy", "spain", "portugal", "france", "germany", "greece",
    "peru", "mexico", "thailand", "vietnam", "iceland", "morocco", "india",
}

MAX_DAYS = 366

HYPHEN_UNIT = re.compile(r"\b(\w+)-(days?|nights?|weeks?|months?)\b", re.IGNORECASE)
TOKEN = re.compile(r"\d+|[^\W\d_](?:[^\W\d_]|['’](?=[^\W\d_])|-(?=[^\W\d_]))*|[,;:!?&()]|\.")

Token = namedtuple("Token", ["text", "lower", "kind", "pos"])


def is_vague_region(name: str) -> bool:
    return name.strip().lower() in VAGUE_REGIONS


# =============================================================================
# Result types
# =============================================================================

@dataclass
class ParsedTrip:
    destinations: List[DestinationSpec] = field(default_factory=list)
    total_days: int = 0
    origin: Optional[str] = None
    return_to: Optional[str] = None
    stated_total_days: Optional[int] = None
    conflicts: List[str] = field(default_factory=list)
    dates: DateHints = field(default_factory=DateHints)

    @property
    def has_destinations(self) -> bool:
        return bool(self.destinations)

    @property
    def has_day_counts(self) -> bool:
        return any(d.day_count > 0 for d in self.destinations)


@dataclass
class _Claim:
    names: List[Tuple[str, int]]   # (display name, token index)
    days: Optional[int]
    kind: str                      # "count" | "each" | "umbrella" | "mention"


@dataclass
class _Entry:
    name: str
    first_pos: int
    explicit: Optional[int] = None
    assigned: Optional[int] = None

    @property
    def days(self) -> int:
        if self.explicit is not None:
            return self.explicit
        return self.assigned or 0


# =============================================================================
# Tokenizing & span detection
# =============================================================================

def tokenize(text: str) -> List[Token]:
    text = HYPHEN_UNIT.sub(r"\1 \2", text)
    tokens = []
    for match in TOKEN.finditer(text):
        raw = match.group(0).replace("’", "'")
        if raw[0].isdigit():
            kind = "num"
        elif raw[0].isalpha():
            kind = "word"
        else:
            kind = "punct"
        tokens.append(Token(raw, raw.lower(), kind, match.start()))
    return tokens


class _Scanner:
    """Token-level helpers shared by the binding passes."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        # A lowercase token counts as a place if the same word appears capitalized elsewhere
        self.capitalized: Dict[str, str] = {}
        for tok in tokens:
            if tok.kind == "word" and tok.text[0].isupper() and tok.lower not in STOPLIST:
                self.capitalized.setdefault(tok.lower, tok.text)
        # Token indices inside a known multi-word place ("Mexico City")
        self.known: Set[int] = set()
        lowered = [tok.lower for tok in tokens]
        for place in KNOWN_PLACES:
            words = place.split()
            for i in range(len(lowered) - len(words) + 1):
                if lowered[i:i + len(words)] == words:
                    if len(words) > 1:
                        self.known.update(range(i, i + len(words)))
                    for word in words:
                        self.capitalized.setdefault(word, word if word in PARTICLES else word.capitalize())

    def tok(self, i: int) -> Optional[Token]:
        if 0 <= i < len(self.tokens):
            return self.tokens[i]
        return None

    def lower(self, i: int) -> str:
        tok = self.tok(i)
        return tok.lower if tok else ""

    def duration_at(self, i: int) -> Optional[Tuple[int, int]]:
        """(days, end index) when a day-count phrase starts at i."""
        tok = self.tok(i)
        if tok is None:
            return None
        if tok.lower == "long" and self.lower(i + 1) == "weekend":
            return 3, i + 2
        if tok.lower == "weekend":
            return 2, i + 1
        if tok.lower == "fortnight":
            return 14, i + 1

        if tok.kind == "num":
            amount = int(tok.text)
        elif tok.lower in NUMBER_WORDS:
            amount = NUMBER_WORDS[tok.lower]
        else:
            return None

        j = i + 1
        if tok.lower == "couple" and self.lower(j) == "of":
            j += 1
        unit = self.lower(j)
        if unit not in UNITS:
            return None
        days = amount * UNITS[unit]
        if days <= 0 or days > MAX_DAYS:
            return None
        return days, j + 1

    def is_place(self, i: int) -> bool:
        tok = self.tok(i)
        if tok is None or tok.kind != "word":
            return False
        if i in self.known:
            return True
        if tok.lower in STOPLIST:
            return False
        return tok.text[0].isupper() or tok.lower in self.capitalized

    def display(self, i: int) -> str:
        tok = self.tokens[i]
        if tok.text[0].isupper():
            return tok.text
        return self.capitalized.get(tok.lower, tok.text)

    def _name(self, parts: List[int]) -> str:
        return " ".join(self.display(k) if self.tokens[k].lower not in PARTICLES else self.tokens[k].lower
                        for k in parts)

    def span_forward(self, i: int) -> Optional[Tuple[str, int]]:
        """Place span starting at i -> (name, exclusive end)."""
        if not self.is_place(i):
            return None
        parts = [i]
        j = i + 1
        while len(parts) < 5:
            if self.is_place(j):
                parts.append(j)
                j += 1
            elif self.lower(j) in PARTICLES and self.is_place(j + 1):
                parts.extend([j, j + 1])
                j += 2
            else:
                break
        return self._name(parts), j

    def span_backward(self, end: int) -> Optional[Tuple[str, int]]:
        """Place span ending at end (inclusive) -> (name, start)."""
        if not self.is_place(end):
            return None
        parts = [end]
        k = end
        while len(parts) < 5:
            if self.is_place(k - 1):
                parts.insert(0, k - 1)
                k -= 1
            elif self.lower(k - 1) in PARTICLES and self.is_place(k - 2):
                parts[:0] = [k - 2, k - 1]
                k -= 2
            else:
                break
        return self._name(parts), k

    def list_forward(self, i: int) -> Tuple[List[Tuple[str, int]], int]:
        """Comma / and separated place list starting at i."""
        first = self.span_forward(i)
        if not first:
            return [], i
        names = [(first[0], i)]
        k = first[1]
        while True:
            j = k
            if self.lower(j) == ",":
                j += 1
            if self.lower(j) in ("and", "&"):
                j += 1
            if j == k:
                break
            nxt = self.tok(j)
            if nxt is None or nxt.kind == "num" or self.duration_at(j):
                break
            span = self.span_forward(j)
            if not span:
                break
            names.append((span[0], j))
            k = span[1]
        return names, k

    def list_backward(self, end: int) -> List[Tuple[str, int]]:
        """Comma / and separated place list ending at end (inclusive)."""
        last = self.span_backward(end)
        if not last:
            return []
        names = [(last[0], last[1])]
        start = last[1]
        while True:
            j = start - 1
            consumed = False
            if self.lower(j) in ("and", "&"):
                j -= 1
                consumed = True
            if self.lower(j) == ",":
                j -= 1
                consumed = True
            if not consumed:
                break
            span = self.span_backward(j)
            if not span:
                break
            names.insert(0, (span[0], span[1]))
            start = span[1]
        return names


# =============================================================================
# Binding passes
# =============================================================================

def _bind_forward(sc: _Scanner, end: int, days: int) -> Optional[_Claim]:
    j = end
    skipped = 0
    while sc.lower(j) in FORWARD_FILLERS and skipped < 3:
        j += 1
        skipped += 1
    names, k = sc.list_forward(j)
    if not names:
        return None
    if sc.lower(k) == "each":
        return _Claim(names, days, "each")
    if sc.lower(k) == ":" and len(names) == 1:
        return _Claim(names, days, "umbrella")
    return _Claim(names, days, "count")


def _bind_backward(sc: _Scanner, start: int, end: int, days: int) -> Optional[_Claim]:
    anchor = start - 1
    if sc.lower(anchor) in ("about", "around", "roughly", "another") and sc.lower(anchor - 1) == "for":
        anchor -= 1
    if sc.lower(anchor) not in ("for", "(", ":"):
        return None
    names = sc.list_backward(anchor - 1)
    if not names:
        return None
    kind = "each" if sc.lower(end) == "each" else "count"
    return _Claim(names, days, kind)


def _collect_claims(sc: _Scanner) -> Tuple[List[_Claim], List[int], List[Tuple[int, str]]]:
    claims: List[_Claim] = []
    loose_totals: List[int] = []
    bare_numbers: List[Tuple[int, str]] = []

    i = 0
    while i < len(sc.tokens):
        duration = sc.duration_at(i)
        if duration:
            days, end = duration
            claim = _bind_forward(sc, end, days) or _bind_backward(sc, i, end, days)
            if claim:
                claims.append(claim)
            else:
                loose_totals.append(days)
            i = end
            continue

        tok = sc.tokens[i]
        if tok.kind == "num" and sc.lower(i - 1) not in MONTH_NAMES:
            j = i + 1 if sc.lower(i + 1) not in ("in", "at") else i + 2
            span = sc.span_forward(j)
            if span:
                bare_numbers.append((int(tok.text), span[0]))
        elif tok.lower in SEQUENCE_TRIGGERS:
            j = i + 1
            skipped = 0
            while sc.lower(j) in SEQUENCE_FILLERS and skipped < 3:
                j += 1
                skipped += 1
            if not sc.duration_at(j):
                names, _ = sc.list_forward(j)
                if names:
                    claims.append(_Claim(names, None, "mention"))
        elif tok.lower in MENTION_TRIGGERS:
            names, _ = sc.list_forward(i + 1)
            if names:
                claims.append(_Claim(names, None, "mention"))
        i += 1

    return claims, loose_totals, bare_numbers


def _find_origin(sc: _Scanner) -> Optional[str]:
    origin = None
    for i, tok in enumerate(sc.tokens):
        span = None
        if tok.lower == "from":
            span = sc.span_forward(i + 1)
            if span:
                after = sc.tok(span[1])
                # "from X 5 days ..." binds the count, not an origin
                if (after is not None and after.kind == "num") or sc.duration_at(span[1]):
                    span = None
        elif tok.lower in ORIGIN_PREFIXES and sc.lower(i + 1) in ("in", "at", "out"):
            j = i + 2 if sc.lower(i + 1) != "out" else i + 3
            span = sc.span_forward(j)
        if span:
            origin = span[0]
    return origin


def _find_return(sc: _Scanner) -> Optional[str]:
    found = None
    for i, tok in enumerate(sc.tokens):
        if tok.lower in RETURN_PREFIXES and sc.lower(i + 1) == "to":
            span = sc.span_forward(i + 2)
            if span:
                found = span[0]
    return found


def _split_evenly(total: int, count: int) -> List[int]:
    base, extra = divmod(total, count)
    return [base + (1 if i < extra else 0) for i in range(count)]


# =============================================================================
# Public API
# =============================================================================

def parse(text: str, today: Optional[date] = None) -> ParsedTrip:
    """
    Parse a trip request into destinations, total days, origin and date hints.

    Per-destination counts are authoritative for total_days. A stated total
    that disagrees with them by more than one day is reported in `conflicts`.
    """
    if not text or not text.strip():
        return ParsedTrip()

    sc = _Scanner(tokenize(text))
    claims, loose_totals, bare_numbers = _collect_claims(sc)
    origin = _find_origin(sc)
    return_to = _find_return(sc)
    dates = extract_dates(text, today)

    has_counted = any(c.kind in ("count", "each") for c in claims)
    entries: Dict[str, _Entry] = {}
    groups: List[Tuple[List[str], int]] = []
    stated_totals: List[int] = list(loose_totals)
    umbrellas = set()

    for claim in claims:
        if claim.kind == "umbrella" and has_counted:
            # "3 weeks in Spain: 10 days Madrid, ..." states a total, Spain is not a stop
            stated_totals.append(claim.days)
            umbrellas.update(name.lower() for name, _ in claim.names)
            continue
        for name, pos in claim.names:
            entry = entries.get(name.lower())
            if entry is None:
                entries[name.lower()] = _Entry(name=name, first_pos=pos)
            else:
                entry.first_pos = min(entry.first_pos, pos)

        if claim.kind == "each" or (claim.kind in ("count", "umbrella") and len(claim.names) == 1):
            for name, _ in claim.names:
                entries[name.lower()].explicit = claim.days
        elif claim.kind == "count":
            groups.append(([name.lower() for name, _ in claim.names], claim.days))
            stated_totals.append(claim.days)

    # "10 days Lisbon, 4 Granada": bare numbers only count once real day counts exist
    if has_counted:
        for number, name in bare_numbers:
            entry = entries.get(name.lower())
            if entry is not None and entry.explicit is None and 0 < number <= MAX_DAYS:
                entry.explicit = number

    # Origin / return places only count as destinations when given their own days
    for excluded in (origin, return_to):
        if excluded:
            entry = entries.get(excluded.lower())
            if entry is not None and entry.explicit is None:
                del entries[excluded.lower()]

    for key in [k for k in entries if k in STOPLIST or k in umbrellas]:
        del entries[key]

    for names, total in groups:
        members = [entries[n] for n in names if n in entries]
        open_members = [m for m in members if m.explicit is None and m.assigned is None]
        remaining = total - sum(m.explicit for m in members if m.explicit is not None)
        if open_members and remaining > 0:
            for member, share in zip(open_members, _split_evenly(remaining, len(open_members))):
                member.assigned = share

    if loose_totals:
        open_entries = [e for e in entries.values() if e.explicit is None and e.assigned is None]
        remaining = max(loose_totals) - sum(e.days for e in entries.values())
        if open_entries and remaining > 0:
            ordered = sorted(open_entries, key=lambda e: e.first_pos)
            for entry, share in zip(ordered, _split_evenly(remaining, len(ordered))):
                entry.assigned = share

    ordered_entries = sorted(entries.values(), key=lambda e: e.first_pos)
    destinations = [
        DestinationSpec(
            name=entry.name,
            day_count=entry.days,
            order=index,
            confirmed=entry.explicit is not None,
        )
        for index, entry in enumerate(ordered_entries, start=1)
    ]

    summed = sum(d.day_count for d in destinations)
    stated_total = max(stated_totals) if stated_totals else None
    conflicts = []
    if destinations and stated_total and any(e.explicit is not None for e in ordered_entries):
        if abs(summed - stated_total) > 1:
            conflicts.append(
                f"You mentioned {stated_total} days in total, but the days per city add up to {summed}."
            )

    return ParsedTrip(
        destinations=destinations,
        total_days=summed if destinations else 0,
        origin=origin,
        return_to=return_to,
        stated_total_days=stated_total,
        conflicts=conflicts,
        dates=dates,
    )
