import datetime as dt
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

DEFAULT_MODE_ID = "default"
DEFAULT_MODE_NAME = "Padrão"
DEFAULT_WARNING_TIME = dt.time(8, 0)
DEFAULT_TEMPLATE_WARNING = (
    "Olá {cliente_nome}, passando pra lembrar do seu agendamento hoje às {horario} com {profissional}."
)

TRIGGER_TYPES = ("time_fixed", "antecedencia", "dias_apos")


class UnknownTriggerTypeError(ValueError):
    def __init__(self, mode_id: Any, trigger_type: Any):
        self.mode_id = mode_id
        self.trigger_type = trigger_type
        super().__init__(f"Unknown follow-up trigger type {trigger_type!r} for mode {mode_id!r}")


class _ModeBase(BaseModel):
    id: str
    name: str
    is_active: bool = True
    is_default: bool = False
    warning_time: Optional[dt.time] = None
    reminder_minutes: Optional[int] = None
    trigger_days: Optional[int] = None
    template_warning: str = ""
    template_reminder: str = ""

    def dedupe_key(self) -> str:
        return f"mode:{self.id}:{self.trigger_type}"

    def template(self) -> str:
        raise NotImplementedError


class TimeFixedMode(_ModeBase):
    """Fires once on the appointment day after a wall-clock time."""

    trigger_type: Literal["time_fixed"] = "time_fixed"

    def template(self) -> str:
        return self.template_warning

    def effective_warning_time(self) -> dt.time:
        return self.warning_time or DEFAULT_WARNING_TIME

    @classmethod
    def default_from_settings(cls, settings: Any) -> "TimeFixedMode":
        """The implicit per-company mode derived from the company's follow-up settings.

        The settings row only configures the daily warning; reminders before
        the appointment need an explicit ``antecedencia`` mode.
        """
        return cls(
            id=DEFAULT_MODE_ID,
            name=DEFAULT_MODE_NAME,
            is_active=bool(getattr(settings, "is_active", False)),
            is_default=True,
            warning_time=getattr(settings, "warning_time", None) or DEFAULT_WARNING_TIME,
            template_warning=getattr(settings, "template_warning", None) or DEFAULT_TEMPLATE_WARNING,
        )


class AntecedenciaMode(_ModeBase):
    """Fires inside the (0, reminder_minutes] window before the appointment starts."""

    trigger_type: Literal["antecedencia"] = "antecedencia"

    def template(self) -> str:
        return self.template_reminder


class DiasAposMode(_ModeBase):
    """Fires once the days elapsed since the last finished appointment reach the threshold."""

    trigger_type: Literal["dias_apos"] = "dias_apos"

    def dedupe_key(self) -> str:
        # A new threshold is a new notification.
        return f"mode:{self.id}:dias_apos:{self.trigger_days}"

    def template(self) -> str:
        return self.template_warning or self.template_reminder


FollowUpMode = Annotated[
    Union[TimeFixedMode, AntecedenciaMode, DiasAposMode],
    Field(discriminator="trigger_type"),
]

_mode_adapter = TypeAdapter(FollowUpMode)

_MODE_FIELDS = (
    "id",
    "name",
    "is_active",
    "trigger_type",
    "warning_time",
    "reminder_minutes",
    "trigger_days",
    "template_warning",
    "template_reminder",
)


def parse_mode(record: Any) -> Union[TimeFixedMode, AntecedenciaMode, DiasAposMode]:
    """Build a typed mode from a persisted record (ORM row, namespace or dict).

    Raises UnknownTriggerTypeError for trigger types outside TRIGGER_TYPES and
    pydantic's ValidationError for otherwise malformed records.
    """
    if isinstance(record, dict):
        data = {key: record.get(key) for key in _MODE_FIELDS}
    else:
        data = {key: getattr(record, key, None) for key in _MODE_FIELDS}

    if data["trigger_type"] not in TRIGGER_TYPES:
        raise UnknownTriggerTypeError(data["id"], data["trigger_type"])

    data["id"] = str(data["id"])
    data["is_active"] = bool(data["is_active"])
    data["template_warning"] = data["template_warning"] or ""
    data["template_reminder"] = data["template_reminder"] or ""
    return _mode_adapter.validate_python(data)


__all__ = [
    "AntecedenciaMode",
    "DEFAULT_MODE_ID",
    "DiasAposMode",
    "FollowUpMode",
    "TimeFixedMode",
    "UnknownTriggerTypeError",
    "ValidationError",
    "parse_mode",
]
