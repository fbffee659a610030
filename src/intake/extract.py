"""
Rule-based lead field extraction.

Maps a caller utterance to a value for one intake field:
- name: Caller's name from introductory phrasing
- phone: A phone number if the caller read one out
- dateOfAccident: Relative or absolute date, serialized as YYYY-MM-DD
- locationOfAccident: City/State, "on/at/near ..." phrase, or a named street
- typeOfTruck: Canonical truck label
- injuriesSustained: Injury and body-part terms (accumulates across the call)
- policeReportFiled: "Yes" / "No"

Everything here is pure: no I/O, no shared state. Extractors fail closed and
return None for anything they cannot read with confidence.
"""

from __future__ import annotations

import calendar
import re
from datetime import date
from typing import Callable, Optional

ACCUMULATING_FIELDS = frozenset({"injuriesSustained"})


def _normalize(text: str) -> str:
    # Realtime transcripts use typographic apostrophes.
    return text.replace("’", "'").replace("‘", "'").strip()


def _usable(text: object) -> bool:
    return isinstance(text, str) and bool(text.strip())


# ---------------------------------------------------------------------------
# Name
# ---------------------------------------------------------------------------

_NAME_TOKENS = r"([a-z]+)(?:\s+([a-z]+))?"

# (pattern, guarded): guarded forms are everyday phrasing ("I'm fine",
# "this is awful") and need stricter filtering unless we just asked for a name.
_NAME_PATTERNS = (
    (re.compile(r"\bmy name(?:'s| is)\s+" + _NAME_TOKENS, re.IGNORECASE), False),
    (re.compile(r"\bcall me\s+" + _NAME_TOKENS, re.IGNORECASE), False),
    (re.compile(r"\b(?:i'm|i am)\s+" + _NAME_TOKENS, re.IGNORECASE), True),
    (re.compile(r"\bthis is\s+" + _NAME_TOKENS, re.IGNORECASE), True),
)

_NAME_QUESTION = re.compile(r"\bname\b", re.IGNORECASE)

# Adverbs, participles and past tenses ("currently", "bleeding", "scared").
_NOT_NAME_SUFFIX = re.compile(r"(?:ly|ing|ed)$")

# Words that follow "I'm" / "this is" far more often than a name does.
_NOT_NAMES = frozenset(
    """
    a an the and but or so just very really not no yes yeah well um uh like
    calling call here there hurt hurting injured fine okay ok alright good great bad sure sorry
    in at on from with about for of to into over out back still also actually
    was been being going gonna trying looking having doing feeling getting thinking
    hoping wondering waiting sitting driving working wanting
    scared afraid worried glad happy upset confused concerned interested terrible awful
    pretty kind sort that it what your my his her their our its me him them us
    someone somebody nobody anyone calls regarding reaching following
    done finished ready home alive lucky stuck lost new now currently
    probably definitely maybe only almost always never
    hospital hospitalized bed work sick tired sore dizzy unable able
    """.split()
)


def extract_name(text: str, hint: str = "") -> Optional[str]:
    """
    Extract the caller's name from introductory phrasing.

    "I'm ..." and "this is ..." are only trusted for ordinary words when the
    preceding question asked for a name.

    Returns one or two title-cased tokens, or None.
    """
    if not _usable(text):
        return None
    text = _normalize(text)
    asked = bool(_NAME_QUESTION.search(hint or ""))

    def plausible(token: str, guarded: bool) -> bool:
        token = token.lower()
        if token in _NOT_NAMES:
            return False
        return not (guarded and not asked and _NOT_NAME_SUFFIX.search(token))

    for pattern, guarded in _NAME_PATTERNS:
        for match in pattern.finditer(text):
            first, second = match.group(1), match.group(2)
            if not plausible(first, guarded):
                continue
            tokens = [first]
            if second and plausible(second, guarded):
                tokens.append(second)
            return " ".join(token.capitalize() for token in tokens)
    return None


# ---------------------------------------------------------------------------
# Phone
# ---------------------------------------------------------------------------

_PHONE = re.compile(r"(?<!\d)(?:\+?1[\s.-]?)?\(?(\d{3})\)?[\s.-]?(\d{3})[\s.-]?(\d{4})(?!\d)")


def extract_phone(text: str) -> Optional[str]:
    """Extract a North American phone number as XXX-XXX-XXXX."""
    if not _usable(text):
        return None
    match = _PHONE.search(text)
    if not match:
        return None
    return "-".join(match.groups())


# ---------------------------------------------------------------------------
# Date of accident
# ---------------------------------------------------------------------------

_NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_MONTH_NAME = (
    r"(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)

_TODAY = re.compile(r"\btoday\b|\bthis morning\b|\btonight\b")
_DAY_BEFORE_YESTERDAY = re.compile(r"\bday before yesterday\b")
_YESTERDAY = re.compile(r"\byesterday\b|\blast night\b")
_AGO = re.compile(
    r"\b(\d{1,3}|" + "|".join(_NUMBER_WORDS) + r")\s+(day|week|month|year)s?\s+ago\b"
)
_LAST_WEEK = re.compile(r"\blast week\b")
_LAST_MONTH = re.compile(r"\blast month\b")
_MONTH_DAY = re.compile(r"\b" + _MONTH_NAME + r"\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b(?:,?\s+(\d{4})\b)?")
_DAY_OF_MONTH = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)?\s+of\s+" + _MONTH_NAME + r"\b(?:,?\s+(\d{4})\b)?")
_NUMERIC_DATE = re.compile(r"\b(\d{1,2})[/.-](\d{1,2})[/.-](\d{4}|\d{2})\b")

# "today" and "yesterday" only count when the talk is about the accident.
_ACCIDENT_CUE = re.compile(r"\b(?:happen\w*|accident|crash\w*|hit|when|occur\w*|date|wreck\w*|collision)\b")


def _shift_months(day: date, months: int) -> date:
    total = day.year * 12 + (day.month - 1) - months
    year, month_index = divmod(total, 12)
    month = month_index + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def _subtract(today: date, amount: int, unit: str) -> date:
    if unit == "day":
        return date.fromordinal(today.toordinal() - amount)
    if unit == "week":
        return date.fromordinal(today.toordinal() - amount * 7)
    if unit == "month":
        return _shift_months(today, amount)
    return _shift_months(today, amount * 12)


def _calendar_date(year: Optional[int], month: int, day: int, today: date) -> Optional[date]:
    try:
        if year is None:
            resolved = date(today.year, month, day)
            if resolved > today:
                resolved = date(today.year - 1, month, day)
            return resolved
        resolved = date(year, month, day)
    except ValueError:
        return None
    return resolved if resolved <= today else None


def _relative_date(text: str, today: date, cue: bool) -> Optional[date]:
    if cue and _TODAY.search(text):
        return today
    if cue and _DAY_BEFORE_YESTERDAY.search(text):
        return date.fromordinal(today.toordinal() - 2)
    if cue and _YESTERDAY.search(text):
        return date.fromordinal(today.toordinal() - 1)

    match = _AGO.search(text)
    if match:
        raw, unit = match.groups()
        amount = int(raw) if raw.isdigit() else _NUMBER_WORDS[raw]
        return _subtract(today, amount, unit)

    if _LAST_WEEK.search(text):
        return date.fromordinal(today.toordinal() - 7)
    if _LAST_MONTH.search(text):
        return _shift_months(today, 1)
    return None


def _absolute_date(text: str, today: date) -> Optional[date]:
    match = _MONTH_DAY.search(text)
    if match:
        month_name, day, year = match.groups()
        return _calendar_date(int(year) if year else None, _MONTHS[month_name[:3]], int(day), today)

    match = _DAY_OF_MONTH.search(text)
    if match:
        day, month_name, year = match.groups()
        return _calendar_date(int(year) if year else None, _MONTHS[month_name[:3]], int(day), today)

    match = _NUMERIC_DATE.search(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        if year < 100:
            year += 2000
        return _calendar_date(year, month, day, today)
    return None


def extract_date(text: str, today: Optional[date] = None, hint: str = "") -> Optional[str]:
    """
    Resolve the accident date mentioned in an utterance.

    Args:
        text: Caller utterance
        today: Reference date for relative expressions (defaults to today)
        hint: The assistant's preceding question, used as context

    Returns:
        Date as YYYY-MM-DD, or None when nothing unambiguous was said
    """
    if not _usable(text):
        return None
    today = today or date.today()
    lowered = _normalize(text).lower()
    cue = bool(_ACCIDENT_CUE.search(lowered) or _ACCIDENT_CUE.search((hint or "").lower()))

    resolved = _relative_date(lowered, today, cue) or _absolute_date(lowered, today)
    return resolved.isoformat() if resolved else None


# ---------------------------------------------------------------------------
# Location of accident
# ---------------------------------------------------------------------------

_US_STATES = frozenset(
    """
    Alabama Alaska Arizona Arkansas California Colorado Connecticut Delaware Florida Georgia
    Hawaii Idaho Illinois Indiana Iowa Kansas Kentucky Louisiana Maine Maryland Massachusetts
    Michigan Minnesota Mississippi Missouri Montana Nebraska Nevada Ohio Oklahoma Oregon
    Pennsylvania Tennessee Texas Utah Vermont Virginia Washington Wisconsin Wyoming
    """.split()
) | frozenset(
    {
        "New Hampshire", "New Jersey", "New Mexico", "New York", "North Carolina",
        "North Dakota", "Rhode Island", "South Carolina", "South Dakota", "West Virginia",
    }
) | frozenset(
    """
    AL AK AZ AR CA CO CT DE FL GA HI ID IL IN IA KS KY LA ME MD MA MI MN MS MO MT NE NV NH NJ
    NM NY NC ND OH OK OR PA RI SC SD TN TX UT VT VA WA WV WI WY DC
    """.split()
)

_CITY_COMMA = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+){0,2}),\s*")
_STATE_WORDS = re.compile(r"([A-Z][A-Za-z]+)(?:\s+([A-Z][a-z]+))?\b")
_STREET_TAIL = re.compile(r",\s*([A-Za-z0-9][^,.!?;]*)")

_PREPOSITION = re.compile(r"\b(?:on|at|near)\s+([A-Za-z0-9][^,.!?;]*)", re.IGNORECASE)
_PHRASE_BREAK = re.compile(
    r"\s+(?:and|but|when|because|so|while|after|before|then|around|about)\b", re.IGNORECASE
)
_NOT_PLACES = frozenset(
    """
    a an about around all least first last that this these those it its my your his her their our
    me him them us one two some any no time times once night noon midnight morning afternoon
    evening moment point purpose top behind what which when
    monday tuesday wednesday thursday friday saturday sunday
    january february march april may june july august september october november december
    """.split()
)
_TIME_PHRASE = re.compile(r"^\d{1,2}(?::\d{2})?\s*(?:am|pm|a\.m|p\.m|o'clock)?$", re.IGNORECASE)

_STREET_SUFFIX = re.compile(
    r"\b((?:[A-Z0-9][\w'-]*\s+){1,3}"
    r"(?:Drive|Street|Highway|Road|Avenue|Boulevard|Freeway|Parkway|Lane|Dr|St|Hwy|Rd|Ave|Blvd)\b\.?"
    r"(?:\s+\d{1,4}\b)?)"
)
_LEADING_FILLER = frozenset({"on", "at", "near", "in", "the", "it", "we", "i", "was", "off", "down", "up"})
_NUMBERED_ROAD = re.compile(r"\b((?:Highway|Interstate|Route|I-|US-?)\s?\d{1,4})\b")


def _leading_state(rest: str) -> Optional[str]:
    match = _STATE_WORDS.match(rest)
    if not match:
        return None
    first, second = match.groups()
    if second and f"{first} {second}" in _US_STATES:
        return f"{first} {second}"
    if first in _US_STATES:
        return first
    return None


def _city_state(text: str) -> Optional[str]:
    for match in _CITY_COMMA.finditer(text):
        rest = text[match.end():]
        state = _leading_state(rest)
        if not state:
            continue
        parts = [match.group(1), state]
        street = _STREET_TAIL.match(rest[len(state):])
        if street and street.group(1).strip():
            parts.append(street.group(1).strip())
        return ", ".join(parts)
    return None


def _preposition_phrase(text: str) -> Optional[str]:
    for match in _PREPOSITION.finditer(text):
        phrase = _PHRASE_BREAK.split(match.group(1), maxsplit=1)[0].strip()
        words = phrase.split()
        if not words:
            continue
        lead = words[1] if words[0].lower() == "the" and len(words) > 1 else words[0]
        if lead.lower() in _NOT_PLACES or _TIME_PHRASE.match(phrase):
            continue
        if words[0].lower() == "the" and len(words) == 1:
            continue
        return phrase
    return None


def _street_name(text: str) -> Optional[str]:
    match = _STREET_SUFFIX.search(text) or _NUMBERED_ROAD.search(text)
    if not match:
        return None
    words = match.group(1).split()
    while len(words) > 1 and words[0].lower() in _LEADING_FILLER:
        words.pop(0)
    return " ".join(words)


def extract_location(text: str) -> Optional[str]:
    """
    Extract where the accident happened.

    Tries, in order: "City, State[, Street]", an "on/at/near <phrase>" phrase,
    then any named street or numbered highway. Case is preserved.
    """
    if not _usable(text):
        return None
    text = _normalize(text)
    for finder in (_city_state, _preposition_phrase, _street_name):
        found = finder(text)
        if found:
            return found
    return None


# ---------------------------------------------------------------------------
# Type of truck
# ---------------------------------------------------------------------------

# Most specific first; the bare "semi" fallback must come last.
_TRUCK_TYPES: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), label)
    for pattern, label in (
        (r"\b(?:18|eighteen)[\s-]?wheelers?\b", "18 Wheeler"),
        (r"\bsemi[\s-]?(?:trucks?|trailers?)\b", "Semi Truck"),
        (r"\btractor[\s-]?trailers?\b", "Tractor Trailer"),
        (r"\bbig[\s-]?rigs?\b", "Big Rig"),
        (r"\bdump[\s-]?trucks?\b", "Dump Truck"),
        (r"\bbox[\s-]?trucks?\b", "Box Truck"),
        (r"\b(?:delivery|amazon|ups|fedex)\s+(?:trucks?|vans?)\b", "Delivery Truck"),
        (r"\b(?:garbage|trash)\s+trucks?\b", "Garbage Truck"),
        (r"\b(?:cement|concrete)\s+(?:trucks?|mixers?)\b", "Cement Truck"),
        (r"\btow[\s-]?trucks?\b", "Tow Truck"),
        (r"\blogging\s+trucks?\b", "Logging Truck"),
        (r"\btankers?(?:\s+trucks?)?\b", "Tanker"),
        (r"\bflatbeds?(?:\s+trucks?)?\b", "Flatbed"),
        (r"\bpickup(?:\s+trucks?)?\b|\bpick-up\s+trucks?\b", "Pickup Truck"),
        (r"\bsemis?\b", "Semi"),
    )
)


def extract_truck_type(text: str) -> Optional[str]:
    """Map truck wording to a canonical label, most specific match first."""
    if not _usable(text):
        return None
    for pattern, label in _TRUCK_TYPES:
        if pattern.search(text):
            return label
    return None


# ---------------------------------------------------------------------------
# Injuries
# ---------------------------------------------------------------------------

_INJURY_CUE = re.compile(
    r"\b(?:hurt\w*|pains?|painful|injur\w*|broke\w*|fractur\w*|whiplash|sore\w*|bruis\w*|ache[sd]?|aching)\b",
    re.IGNORECASE,
)

_INJURY_TERMS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (label, re.compile(r"\b(?:" + pattern + r")\b", re.IGNORECASE))
    for label, pattern in (
        ("Back Pain", r"back pain"),
        ("Neck Pain", r"neck pain"),
        ("Head Injury", r"head injury"),
        ("Broken Bone", r"broken bones?"),
        ("Whiplash", r"whiplash"),
        ("Concussion", r"concussions?"),
        ("Fracture", r"fractur\w*"),
        ("Bruising", r"bruis\w*"),
        ("Laceration", r"lacerations?"),
        ("Bleeding", r"bleeding"),
        ("Sprain", r"sprain\w*"),
        ("Head", r"head"),
        ("Neck", r"neck"),
        ("Back", r"back"),
        ("Spine", r"spine|spinal"),
        ("Shoulder", r"shoulders?"),
        ("Arm", r"arms?"),
        ("Elbow", r"elbows?"),
        ("Wrist", r"wrists?"),
        ("Hand", r"hands?"),
        ("Chest", r"chest"),
        ("Ribs", r"ribs?"),
        ("Hip", r"hips?"),
        ("Leg", r"legs?"),
        ("Knee", r"knees?"),
        ("Ankle", r"ankles?"),
        ("Foot", r"foot|feet"),
    )
)


def _words(label: str) -> set[str]:
    return set(label.lower().split())


def extract_injuries(text: str) -> Optional[str]:
    """
    Extract injury terms from an utterance that talks about being hurt.

    Returns the matched terms title-cased and comma-joined in the order they
    were said, e.g. "Neck Pain, Shoulder". Terms covered by a longer match
    ("Back" inside "Back Pain") are dropped.
    """
    if not _usable(text):
        return None
    text = _normalize(text)
    if not _INJURY_CUE.search(text):
        return None

    found: list[tuple[int, str]] = []
    for label, pattern in _INJURY_TERMS:
        match = pattern.search(text)
        if not match:
            continue
        if any(_words(label) <= _words(existing) for _, existing in found):
            continue
        found.append((match.start(), label))

    if not found:
        return None
    return ", ".join(label for _, label in sorted(found))


def merge_injuries(prior: Optional[str], new: Optional[str]) -> Optional[str]:
    """
    Append newly mentioned injuries to the accumulated value.

    A term is skipped when the prior value already contains it (case-insensitive,
    on word boundaries).
    """
    if not new or not new.strip():
        return prior
    merged = [part.strip() for part in (prior or "").split(",") if part.strip()]
    for term in (part.strip() for part in new.split(",")):
        if not term:
            continue
        seen = ", ".join(merged)
        if re.search(r"\b" + re.escape(term) + r"\b", seen, re.IGNORECASE):
            continue
        merged.append(term)
    return ", ".join(merged) if merged else None


# ---------------------------------------------------------------------------
# Police report
# ---------------------------------------------------------------------------

_POLICE_CUE = re.compile(
    r"\b(?:police|officers?|cops?|reports?|trooper|sheriff|showed up|came out|never came|"
    r"didn't come|did not come)\b",
    re.IGNORECASE,
)
_POLICE_YES = re.compile(
    r"\b(?:yes|yeah|yep|yup)\b|\bthey did\b(?!\s+(?:not|never)\b)"
    r"|(?<!never )(?<!not )\b(?:filed|made|wrote|took)\s+(?:a|the|an)\s+(?:police\s+|accident\s+)?report\b"
    r"|(?<!no )(?<!not )(?<!never )\b(?:police|officers?|cops?|trooper|sheriff)\s+(?:came|showed up|filed|wrote|made|took)\b"
    r"|\b(?:i have|i got|got)\s+(?:a|the)\s+(?:police\s+)?report\b"
    r"|\breport number\b",
    re.IGNORECASE,
)
_POLICE_NO = re.compile(
    r"\b(?:no|nope|never|nobody|none|not|didn't|did not|wasn't|was not|haven't|have not)\b",
    re.IGNORECASE,
)


def extract_police_report(text: str, hint: str = "") -> Optional[str]:
    """
    Classify whether a police report was filed.

    "No" keywords are only consulted when no "Yes" keyword matched. The
    utterance, or the question it answers, must be about the police.
    """
    if not _usable(text):
        return None
    text = _normalize(text)
    if not (_POLICE_CUE.search(text) or _POLICE_CUE.search(hint or "")):
        return None
    if _POLICE_YES.search(text):
        return "Yes"
    if _POLICE_NO.search(text):
        return "No"
    return None


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

Extractor = Callable[[str, date, str], Optional[str]]

EXTRACTORS: dict[str, Extractor] = {
    "name": lambda text, today, hint: extract_name(text, hint),
    "phone": lambda text, today, hint: extract_phone(text),
    "dateOfAccident": lambda text, today, hint: extract_date(text, today, hint),
    "locationOfAccident": lambda text, today, hint: extract_location(text),
    "typeOfTruck": lambda text, today, hint: extract_truck_type(text),
    "injuriesSustained": lambda text, today, hint: extract_injuries(text),
    "policeReportFiled": lambda text, today, hint: extract_police_report(text, hint),
}


def extract(
    field_name: str,
    text: str,
    *,
    today: Optional[date] = None,
    hint: str = "",
) -> Optional[str]:
    """
    Extract one lead field from a caller utterance.

    Args:
        field_name: Wire name of the field (e.g. "dateOfAccident")
        text: Caller utterance
        today: Reference date for relative dates
        hint: The assistant's preceding question, if any

    Returns:
        The extracted value, or None

    Raises:
        KeyError: If `field_name` is not a lead field
    """
    extractor = EXTRACTORS[field_name]
    if not _usable(text):
        return None
    return extractor(text, today or date.today(), hint or "")
