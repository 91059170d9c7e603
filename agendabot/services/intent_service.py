import re
import unicodedata

from agendabot.logging_config import get_logger
from agendabot.schemas.conversation import ConversationType

logger = get_logger("intent_service")


def normalize_for_matching(text: str) -> str:
    """Lowercase, strip accents and surrounding whitespace."""
    decomposed = unicodedata.normalize("NFD", text or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.lower().strip()


def _any(patterns: list[str], text: str) -> bool:
    return any(re.search(pattern, text) for pattern in patterns)


RESCHEDULE_PATTERNS = [
    r"remarcar",
    r"reagendar",
    r"mudar (as |o |meu |de |para )",
    r"trocar (as |o |meu |de |para )",
    r"passar (as |o |meu |para )",
    r"outr[oa] (dia|data|horario)",
    r"em vez de",
]

AVAILABILITY_PATTERNS = [
    r"disponivel",
    r"disponiveis",
    r"disponibilidade",
    r"tem (horario|vaga)",
    r"horarios?.*(tem|ha).*disponiv",
]

OWN_APPOINTMENTS_PATTERNS = [
    r"meus",
    r"tenho agendado",
    r"meu agendamento",
    r"quando (e|eu tenho)",
]

CONSULT_PATTERNS = [
    r"quais? (os |meus )?horarios",
    r"meus? horarios",
    r"meus? agendamentos?",
    r"horarios?.*(amanha|hoje)",
    r"agendamentos?.*(amanha|hoje)",
    r"quando (e|eu tenho)",
    r"ver (meu |meus )?agendamentos?",
    r"consultar agendamentos?",
    r"que horas (e|eu agendei|e meu)",
    r"tenho agendado",
    r"quais? agendamentos?",
    r"o que (eu )?tenho",
]

CANCEL_PATTERNS = [
    r"cancela",
    r"desmarcar",
    r"nao (vou|posso|consigo) (mais|ir)",
    r"tira (meu |meus )?agendamentos?",
]

DELAY_PATTERNS = [
    r"atrasar",
    r"atraso",
    r"chegar.*atrasado",
]

COMMENT_PATTERNS = [
    r"observacao",
    r"\bnota\b",
    r"comentario",
    r"deixar registrado",
]

CONFIRMATION_PATTERNS = [
    r"^(sim|ok|pode|confirma|ta bom|ta certo|certo|fechou|valeu)\b",
    r"pode confirmar",
]


def _is_reschedule(msg: str) -> bool:
    if _any(RESCHEDULE_PATTERNS, msg):
        return True
    # "nao posso as 10, pode ser as 11"
    return bool(re.search(r"nao (vou|posso|consigo)", msg)) and bool(
        re.search(r"(marcar|agendar|pode ser|as \d)", msg)
    )


def classify_conversation_type(text: str) -> ConversationType:
    """Rule-based classification, first matching rule wins."""
    msg = normalize_for_matching(text)

    if _is_reschedule(msg):
        return ConversationType.RESCHEDULE

    # Asking for free slots is a booking conversation, not a lookup of own appointments.
    if _any(AVAILABILITY_PATTERNS, msg) and not _any(OWN_APPOINTMENTS_PATTERNS, msg):
        return ConversationType.BOOK

    if _any(CONSULT_PATTERNS, msg):
        return ConversationType.CONSULT
    if _any(CANCEL_PATTERNS, msg):
        return ConversationType.CANCEL
    if _any(DELAY_PATTERNS, msg):
        return ConversationType.DELAY
    if _any(COMMENT_PATTERNS, msg):
        return ConversationType.COMMENT
    if _any(CONFIRMATION_PATTERNS, msg):
        return ConversationType.CONFIRMATION

    if "meus" in msg and ("horario" in msg or "agendamento" in msg):
        return ConversationType.CONSULT

    return ConversationType.BOOK


def is_opening_hours_question(text: str) -> bool:
    """Mentions of the store schedule ("que horario funciona?") rather than the client's bookings."""
    msg = normalize_for_matching(text)
    return any(word in msg for word in ("horario", "funciona", "aberto"))
