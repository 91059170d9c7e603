"""Rule-based extraction of booking fields from a Portuguese message."""

import re
from datetime import date, time, timedelta
from typing import Optional

from agendabot.logging_config import get_logger
from agendabot.schemas.conversation import ConversationContext, ExtractedFields
from agendabot.services.intent_service import normalize_for_matching

logger = get_logger("extraction_service")

SERVICE_SYNONYMS = {
    "cabelo": ["cabelo", "cortar", "corta", "corte", "cortado", "aparar", "apara"],
    "barba": ["barba", "barbear", "barbeiro", "fazer barba"],
    "pele": ["pele", "limpeza de pele", "tratamento", "facial", "skincare"],
    "combo": ["combo", "tudo", "completo", "pacote", "cabelo e barba"],
}

WEEKDAY_PATTERNS = [
    (0, r"\bsegunda\b"),
    (1, r"\bterca\b"),
    (2, r"\bquarta\b"),
    (3, r"\bquinta\b"),
    (4, r"\bsexta\b"),
    (5, r"\bsabado\b"),
    (6, r"\bdomingo\b"),
]

DATE_PATTERN = re.compile(r"\b(\d{1,2})[/-](\d{1,2})(?:[/-](\d{2,4}))?\b")
DAY_OF_MONTH_PATTERN = re.compile(r"\bdia\s+(\d{1,2})\b")

# Time tokens: "14", "14:30", "14h", "14h30".
_TIME_TOKEN = r"(\d{1,2})(?:(?::|h)(\d{2})|h)?\b"
PRIORITY_TIME_PATTERNS = [
    re.compile(r"\b(?:para|pra|pro|pode\s+ser|marcar|mudar|agendar)\b[^0-9]*?(?:as\s+)?" + _TIME_TOKEN),
    re.compile(r"\bas\s+" + _TIME_TOKEN),
]
ANY_TIME_PATTERN = re.compile(r"\b" + _TIME_TOKEN)

NAME_PATTERNS = [
    re.compile(r"\b(?i:me chamo|meu nome [ée]|sou)\s+([A-ZÀ-Ý][a-zà-ÿ]+(?:\s+[A-ZÀ-Ý][a-zà-ÿ]+)+)"),
    re.compile(r"^([A-ZÀ-Ý][a-zà-ÿ]+(?:\s+[A-ZÀ-Ý][a-zà-ÿ]+)+)$"),
]
GREETINGS = {"bom dia", "boa tarde", "boa noite", "ola tudo", "oi tudo"}


def _add_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def extract_service(msg: str, context: ConversationContext) -> Optional[str]:
    for service in context.services:
        if normalize_for_matching(service.name) in msg:
            return service.name

    for key, synonyms in SERVICE_SYNONYMS.items():
        if any(synonym in msg for synonym in synonyms):
            match = next(
                (s for s in context.services if key in normalize_for_matching(s.name)),
                None,
            )
            if match:
                return match.name
    return None


def extract_date(msg: str, today: date) -> Optional[date]:
    if re.search(r"\bhoje\b", msg):
        return today
    if re.search(r"depois de amanha", msg):
        return today + timedelta(days=2)
    if re.search(r"\bamanha\b", msg):
        return today + timedelta(days=1)

    match = DAY_OF_MONTH_PATTERN.search(msg)
    if match:
        day = int(match.group(1))
        if 1 <= day <= 31:
            year, month = today.year, today.month
            if day < today.day:
                year, month = _add_month(year, month)
            return _safe_date(year, month, day)

    match = DATE_PATTERN.search(msg)
    if match:
        day, month = int(match.group(1)), int(match.group(2))
        year = int(match.group(3)) if match.group(3) else today.year
        if year < 100:
            year += 2000
        return _safe_date(year, month, day)

    for weekday, pattern in WEEKDAY_PATTERNS:
        if re.search(pattern, msg):
            days_ahead = (weekday - today.weekday()) % 7 or 7
            return today + timedelta(days=days_ahead)
    return None


def _time_from_match(match: re.Match) -> Optional[time]:
    hour = int(match.group(1))
    minute = int(match.group(2)) if match.group(2) else 0
    if 0 <= hour <= 23 and 0 <= minute <= 59:
        return time(hour, minute)
    return None


def extract_time(msg: str) -> Optional[time]:
    # Dates would otherwise be read as hours ("dia 15", "20/05").
    msg = DAY_OF_MONTH_PATTERN.sub(" ", msg)
    msg = DATE_PATTERN.sub(" ", msg)

    for pattern in PRIORITY_TIME_PATTERNS:
        match = pattern.search(msg)
        if match:
            value = _time_from_match(match)
            if value is not None:
                return value

    # "de 10 para 11": the last mention is the target.
    matches = list(ANY_TIME_PATTERN.finditer(msg))
    if matches:
        return _time_from_match(matches[-1])
    return None


def extract_professional(msg: str, context: ConversationContext) -> Optional[str]:
    for professional in context.professionals:
        name = normalize_for_matching(professional.name)
        if name and re.search(rf"\b{re.escape(name)}\b", msg):
            return professional.name
    if context.is_solo:
        return context.professionals[0].name
    return None


def extract_name(text: str) -> Optional[str]:
    stripped = text.strip()
    if normalize_for_matching(stripped) in GREETINGS:
        return None
    for pattern in NAME_PATTERNS:
        match = pattern.search(stripped)
        if match:
            name = match.group(1).strip()
            if len(name.split()) >= 2:
                return name
    return None


def extract_period(msg: str) -> Optional[str]:
    msg = re.sub(r"\bboa (tarde|noite)\b", " ", msg)
    if re.search(r"\bmanha\b|matinal|matutino", msg):
        return "manhã"
    if re.search(r"\btarde\b|vespertino", msg):
        return "tarde"
    if re.search(r"\bnoite\b|noturno", msg):
        return "noite"
    return None


def extract_fields(text: str, context: ConversationContext) -> ExtractedFields:
    """Fields found in this message only; merging with earlier turns happens in memory."""
    msg = normalize_for_matching(text)
    fields = ExtractedFields(
        service=extract_service(msg, context),
        date=extract_date(msg, context.today),
        time=extract_time(msg),
        professional=extract_professional(msg, context),
        name=extract_name(text),
        period=extract_period(msg),
    )
    logger.debug(
        "Fields extracted",
        extra={"context": {"subject": context.subject_address, "fields": fields.model_dump(exclude_none=True)}},
    )
    return fields
