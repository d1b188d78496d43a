"""Retention constants."""

from django.db import models


class DeletionStatus(models.TextChoices):
    DEFERRED_LEGAL = "deferred_legal", "Deferred (legal retention)"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"


class RetentionAction(models.TextChoices):
    DELETE = "delete", "Delete"
    ANONYMIZE = "anonymize", "Anonymize"


REASON_ABANDONED_CHECKOUT = "abandoned_checkout"
REASON_RETENTION_EXPIRED = "retention_expired"

AUDIT_SOURCE = "retention-automaton"
ERASURE_SOURCE = "erasure-request"
CANCEL_CONFIRM_PHRASE = "CANCEL DELETION"

ANONYMIZED_EMAIL = "erased@anonymized.invalid"
ANONYMIZED_NAME = "REDACTED"
