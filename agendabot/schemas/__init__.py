from agendabot.schemas.conversation import ConversationContext, ConversationType, ExtractedFields
from agendabot.schemas.job import FailedJobItem, Job, JobPayload, JobStatus, QueueHealth
from agendabot.schemas.validation import BlockStatus, ValidationResult
from agendabot.schemas.webhook import EvolutionWebhook, WebhookAck

__all__ = [
    "ConversationContext",
    "ConversationType",
    "ExtractedFields",
    "Job",
    "JobPayload",
    "JobStatus",
    "QueueHealth",
    "FailedJobItem",
    "BlockStatus",
    "ValidationResult",
    "EvolutionWebhook",
    "WebhookAck",
]
