"""Deterministic field extraction from inbound customer text.

Pure pattern matching: no inference, no I/O. Keys already present in the
known fields are never re-derived.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional, Sequence

from app.schemas.known_fields import KnownFields
from app.services.rule_config import RuleConfig, get_rule_config

# Signals that describe this turn only and are never persisted.
TURN_SIGNALS = frozenset({"customer_declined"})

MAX_COUNT = 10

NAME_STOPLIST = {
    "hi", "hello", "hey", "yes", "no", "ok", "okay", "thanks", "thank you", "sure",
    "fine", "good", "great", "freezone", "mainland", "here", "interested", "looking",
    "inside", "outside", "from", "new", "renewal", "not", "just", "available",
    "sorry", "urgent", "planning", "currently", "still", "also", "really", "very",
    "trying", "writing", "asking", "calling", "wondering", "ready", "happy", "glad",
    "confused", "going", "based", "living", "working", "staying", "back", "already",
    "actually", "unable", "waiting", "married", "single", "there", "done",
}
NAME_BREAK_WORDS = {
    "and", "i", "im", "from", "need", "want", "looking", "here", "my", "with", "for",
    "please", "pls", "interested", "am", "in", "the", "a", "to",
}
# explicit introductions accept any casing
NAME_INTRO = re.compile(
    r"\b(?:my name is|my name's|name is|name:|call me)\s+([a-z][a-z' \-]{1,49})",
    re.IGNORECASE,
)
# "I'm ..." and "this is ..." precede adjectives as often as names, so the name must be capitalised
SELF_INTRO = re.compile(r"\b(?i:this is|i am|i'm|im)\s+([A-Z][a-z'\-]+(?: [A-Z][a-z'\-]+){0,3})")
BARE_NAME = re.compile(r"^\s*([a-z][a-z' \-]{1,49}?)\s*[.!]?\s*$", re.IGNORECASE)

NATIONALITIES = (
    (re.compile(r"\b(nigerian|nigeria)\b", re.I), "Nigerian"),
    (re.compile(r"\b(bangladeshi|bangladesh)\b", re.I), "Bangladeshi"),
    (re.compile(r"\b(somali|somalia)\b", re.I), "Somali"),
    (re.compile(r"\b(indian|india)\b", re.I), "Indian"),
    (re.compile(r"\b(pakistani|pakistan)\b", re.I), "Pakistani"),
    (re.compile(r"\b(filipino|filipina|philippines)\b", re.I), "Filipino"),
    (re.compile(r"\b(egyptian|egypt)\b", re.I), "Egyptian"),
    (re.compile(r"\b(british|uk|united kingdom)\b", re.I), "British"),
    (re.compile(r"\b(american|usa|united states)\b", re.I), "American"),
    (re.compile(r"\b(canadian|canada)\b", re.I), "Canadian"),
    (re.compile(r"\b(nepali|nepalese|nepal)\b", re.I), "Nepali"),
    (re.compile(r"\b(sri lankan|sri lanka|srilanka)\b", re.I), "Sri Lankan"),
    (re.compile(r"\b(vietnamese|vietnam)\b", re.I), "Vietnamese"),
    (re.compile(r"\b(jordanian|jordan)\b", re.I), "Jordanian"),
    (re.compile(r"\b(lebanese|lebanon)\b", re.I), "Lebanese"),
    (re.compile(r"\b(syrian|syria)\b", re.I), "Syrian"),
    (re.compile(r"\b(russian|russia)\b", re.I), "Russian"),
    (re.compile(r"\b(chinese|china)\b", re.I), "Chinese"),
)

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH = r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?"
_ORD = r"(?:st|nd|rd|th)?"

DATE_DMY = re.compile(r"\b(\d{1,2})[/-](\d{1,2})[/-](\d{4})\b")
DATE_DMY_SHORT = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{2})\b")
DATE_ISO = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
DATE_DAY_MONTH = re.compile(rf"\b(\d{{1,2}}){_ORD}\s+(?:of\s+)?{_MONTH},?\s+(\d{{4}})\b", re.I)
DATE_MONTH_DAY = re.compile(rf"\b{_MONTH}\s+(\d{{1,2}}){_ORD},?\s+(\d{{4}})\b", re.I)

RELATIVE_DATE = re.compile(
    r"\b(?:(?:next|this|coming)\s+(?:week|month|year|monday|tuesday|wednesday|thursday|friday|saturday|sunday)"
    r"|in\s+(?:a|an|one|two|three|four|few|\d+)\s+(?:days?|weeks?|months?)"
    r"|end of (?:the )?(?:week|month|year)"
    r"|day after tomorrow|tomorrow|soon)\b",
    re.I,
)
EXPIRY_CONTEXT = re.compile(r"\b(expir\w*|renew\w*|valid (?:till|until)|due)\b", re.I)

NUMBER_WORDS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}
_COUNT = r"(\d{1,6}|zero|one|two|three|four|five|six|seven|eight|nine|ten)"
PARTNERS = re.compile(rf"\b{_COUNT}\s+(?:partners?|shareholders?|owners?)\b", re.I)
VISAS = re.compile(rf"\b{_COUNT}\s+(?:visas?|employees?|staff)\b", re.I)
DURATION = re.compile(r"\b(30|thirty|60|sixty)\s*-?\s*(?:days?|d)\b", re.I)
BARE_DURATION = re.compile(r"^\s*(30|thirty|60|sixty)\s*$", re.I)

EMAIL = re.compile(r"\b[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}\b")
BUSINESS_ACTIVITIES = ("general trading", "foodstuff", "it services", "consulting", "import export", "trading")
DISCOUNT = re.compile(r"\b(discount|cheaper|lower price|best price|reduce the price)\b", re.I)
PRICE_SENSITIVE = re.compile(r"\b(cheapest|lowest|budget|most affordable)\b", re.I)
DECLINED = re.compile(r"\b(not interested|no thanks|no thank you|not now|maybe later|don'?t want)\b", re.I)
SERVICE_CHANGE = re.compile(r"\b(actually|instead|change|switch|rather|not .* but)\b", re.I)
INSIDE_UAE = re.compile(
    r"\b(inside|in uae|in the uae|in dubai|currently in|i am in|i'm in|im in|already here|overstay\w*)\b", re.I
)
OUTSIDE_UAE = re.compile(r"\b(outside|not in uae|not inside|abroad|back home)\b", re.I)
YES = re.compile(r"^\s*(yes|yeah|yea|yep|yup|sure)\b", re.I)
NO = re.compile(r"^\s*(no|nope|nah)\b", re.I)
TIMELINE = re.compile(r"\b(asap|urgent|urgently|immediately|this week|next week|this month|flexible)\b", re.I)
ESCALATIONS = (
    (re.compile(r"\b(refund|chargeback|dispute|fraud|scam|stolen|unauthori[sz]ed)\b", re.I), "payment_dispute"),
    (re.compile(r"\b(angry|furious|complain\w*|sue|lawyer|legal action|court)\b", re.I), "legal_or_complaint"),
)


@dataclass
class ExtractionResult:
    fields: dict[str, Any] = field(default_factory=dict)
    date_hint: Optional[str] = None
    service_change: Optional[str] = None

    @property
    def persistable(self) -> dict[str, Any]:
        return {key: value for key, value in self.fields.items() if key not in TURN_SIGNALS}


def _clean_name(raw: str) -> Optional[str]:
    words = []
    for word in raw.strip().split():
        if word.lower().strip("'-") in NAME_BREAK_WORDS:
            break
        words.append(word)
        if len(words) == 4:
            break
    candidate = " ".join(words).strip(" '-")
    if len(candidate) < 2 or len(candidate) > 50:
        return None
    if candidate.lower() in NAME_STOPLIST or words[0].lower() in NAME_STOPLIST:
        return None
    if detect_nationality(candidate):
        return None
    return " ".join(part[:1].upper() + part[1:] for part in candidate.split())


def detect_name(text: str, rules: RuleConfig, allow_bare: bool = False) -> Optional[str]:
    candidates = [match.group(1) for match in NAME_INTRO.finditer(text)]
    candidates.extend(match.group(1) for match in SELF_INTRO.finditer(text))
    if allow_bare:
        bare = BARE_NAME.match(text)
        if bare:
            candidates.append(bare.group(1))
    for raw in candidates:
        name = _clean_name(re.split(r"[,.!?;]", raw)[0])
        if name and not detect_service(name, rules):
            return name
    return None


def detect_escalation(text: str) -> Optional[str]:
    """Category of a message that must go to a person instead of an automatic reply."""
    for pattern, category in ESCALATIONS:
        if pattern.search(text or ""):
            return category
    return None


def detect_nationality(text: str) -> Optional[str]:
    for pattern, value in NATIONALITIES:
        if pattern.search(text):
            return value
    return None


def _keyword_pattern(keyword: str) -> re.Pattern:
    return re.compile(rf"(?<!\w){re.escape(keyword.lower())}(?!\w)")


def detect_service(text: str, rules: RuleConfig) -> Optional[str]:
    lowered = (text or "").lower()
    for service_key, service in rules.services.items():
        for keyword in service.keywords:
            if _keyword_pattern(keyword).search(lowered):
                return service_key
    return None


def _safe_date(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def parse_explicit_date(text: str) -> Optional[str]:
    """Explicit calendar dates only; returns ISO format or None."""
    match = DATE_ISO.search(text)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    match = DATE_DMY.search(text)
    if match:
        return _safe_date(int(match.group(3)), int(match.group(2)), int(match.group(1)))
    match = DATE_DMY_SHORT.search(text)
    if match:
        short_year = int(match.group(3))
        year = 2000 + short_year if short_year < 50 else 1900 + short_year
        return _safe_date(year, int(match.group(2)), int(match.group(1)))
    match = DATE_DAY_MONTH.search(text)
    if match:
        return _safe_date(int(match.group(3)), MONTHS[match.group(2).lower()[:3]], int(match.group(1)))
    match = DATE_MONTH_DAY.search(text)
    if match:
        return _safe_date(int(match.group(3)), MONTHS[match.group(1).lower()[:3]], int(match.group(2)))
    return None


def relative_date_hint(text: str) -> Optional[str]:
    match = RELATIVE_DATE.search(text)
    return match.group(0) if match else None


def parse_bounded_count(raw: str, minimum: int = 0, maximum: int = MAX_COUNT) -> Optional[int]:
    value = NUMBER_WORDS.get(raw.lower())
    if value is None:
        try:
            value = int(raw)
        except ValueError:
            return None
    if value < minimum or value > maximum:
        return None
    return value


def _asked(last_question_key: Optional[str], *suffixes: str) -> bool:
    return bool(last_question_key) and any(last_question_key.endswith(suffix) for suffix in suffixes)


def extract(
    text: str,
    known_fields: KnownFields,
    history: Sequence[str] = (),
    last_question_key: Optional[str] = None,
    rules: Optional[RuleConfig] = None,
) -> ExtractionResult:
    """Derive new fields from ``text``.

    ``history`` holds earlier inbound bodies, oldest first, and is only used
    for service and nationality when the current message has none.
    """
    rules = rules or get_rule_config()
    result = ExtractionResult()
    fields = result.fields
    text = text or ""
    lowered = text.lower()
    service = known_fields.get("service")

    def offer(key: str, value: Any) -> None:
        if value is not None and not known_fields.has(key) and key not in fields:
            fields[key] = value

    if not known_fields.has("service"):
        service_key = detect_service(text, rules)
        if service_key is None:
            for previous in reversed(history):
                service_key = detect_service(previous, rules)
                if service_key:
                    break
        offer("service", service_key)
        service = service or fields.get("service")
    else:
        requested = detect_service(text, rules)
        if requested and requested != known_fields.service and SERVICE_CHANGE.search(text):
            result.service_change = requested

    if not known_fields.has("name"):
        offer("name", detect_name(text, rules, allow_bare=last_question_key == rules.core_questions.name.key))

    if not known_fields.has("nationality"):
        nationality = detect_nationality(text)
        if nationality is None:
            for previous in reversed(history):
                nationality = detect_nationality(previous)
                if nationality:
                    break
        offer("nationality", nationality)

    email = EMAIL.search(text)
    if email:
        offer("email", email.group(0).lower())

    hint = relative_date_hint(text)
    if hint:
        result.date_hint = hint
    else:
        explicit = parse_explicit_date(text)
        if explicit:
            offer("expiry_date" if EXPIRY_CONTEXT.search(text) else "timeline_intent", explicit)

    match = PARTNERS.search(text)
    if match:
        offer("partners_count", parse_bounded_count(match.group(1), minimum=1))
    match = VISAS.search(text)
    if match:
        offer("visas_count", parse_bounded_count(match.group(1)))

    duration = DURATION.search(text)
    if duration is None and _asked(last_question_key, "DURATION"):
        duration = BARE_DURATION.match(text)
    if duration:
        offer("visit_duration_days", 30 if duration.group(1).lower() in ("30", "thirty") else 60)

    if "mainland" in lowered:
        offer("license_type", "mainland")
    elif "freezone" in lowered or "free zone" in lowered:
        offer("license_type", "freezone")

    for activity in BUSINESS_ACTIVITIES:
        if activity in lowered:
            offer("business_activity", activity)
            break

    if re.search(r"\brenew\w*\b", lowered):
        offer("new_or_renewal", "renewal")
    elif re.search(r"\bnew (license|licence|company|setup|business)\b", lowered):
        offer("new_or_renewal", "new")

    if OUTSIDE_UAE.search(text):
        offer("inside_uae", False)
    elif INSIDE_UAE.search(text):
        offer("inside_uae", True)
    elif _asked(last_question_key, "INSIDE_UAE"):
        if YES.match(text):
            offer("inside_uae", True)
        elif NO.match(text):
            offer("inside_uae", False)

    if service == "freelance_visa":
        if re.search(r"\b(visa only|just visa|only visa|only the visa)\b", lowered):
            offer("service_variant", "visa")
        elif "permit" in lowered:
            offer("service_variant", "permit")

    if service == "investor_visa":
        if re.search(r"\b(real estate|property|villa|apartment)\b", lowered):
            offer("investor_type", "real_estate")
        elif re.search(r"\b(company|partner|business)\b", lowered):
            offer("investor_type", "company")

    if service == "golden_visa":
        category = re.search(r"\b(investor|professional|media|student|executive)\b", lowered)
        if category:
            offer("golden_category", category.group(1).title())

    if service == "family_visa":
        sponsor = re.search(r"\b(employment|employee|partner|investor)\b", lowered)
        if sponsor:
            offer("sponsor_status", "employment" if sponsor.group(1).startswith("employ") else sponsor.group(1))
        if _asked(last_question_key, "FAMILY_LOCATION"):
            if re.search(r"\boutside\b", lowered):
                offer("family_location", "outside")
            elif re.search(r"\binside\b", lowered):
                offer("family_location", "inside")

    if service == "pro_services" and _asked(last_question_key, "SCOPE") and text.strip():
        offer("pro_scope", text.strip()[:80])

    timeline = TIMELINE.search(text)
    if timeline:
        offer("timeline_intent", timeline.group(1).lower())

    if DISCOUNT.search(text):
        offer("customer_requested_discount", True)
    if PRICE_SENSITIVE.search(text):
        offer("price_sensitive", True)
    if DECLINED.search(text):
        fields["customer_declined"] = True

    return result
