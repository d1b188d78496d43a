"""Abuse escalation constants.

Block windows escalate with the number of offenses recorded for a
source IP inside the cooling window, capped at the last step.
"""

from django.db import models


class IncidentType(models.TextChoices):
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded", "Rate limit exceeded"
    OTP_BRUTE_FORCE = "otp_brute_force", "OTP brute force"
    SUSPICIOUS_PATTERN = "suspicious_pattern", "Suspicious pattern"
    UNAUTHORIZED_ACCESS = "unauthorized_access", "Unauthorized access"
    PAYMENT_SIGNATURE_INVALID = "payment_signature_invalid", "Payment signature invalid"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid", "Webhook signature invalid"
    ADMIN_MANUAL = "admin_manual", "Blocked by admin"


class Severity(models.TextChoices):
    LOW = "low", "Low"
    MEDIUM = "medium", "Medium"
    HIGH = "high", "High"
    CRITICAL = "critical", "Critical"


class BlockType(models.TextChoices):
    TEMPORARY = "temporary", "Temporary"
    PERMANENT = "permanent", "Permanent"


class AllowlistCategory(models.TextChoices):
    PAYMENT_GATEWAY = "payment_gateway", "Payment gateway"
    WEBHOOK_PROVIDER = "webhook_provider", "Webhook provider"
    INTERNAL = "internal", "Internal"
    MONITORING = "monitoring", "Monitoring"
    ADMIN = "admin", "Admin"


# 15m, 1h, 6h, 24h, 7d
BLOCK_DURATIONS_MINUTES: tuple[int, ...] = (15, 60, 360, 1440, 10080)

TEMPORARY_INCIDENTS: frozenset[str] = frozenset(
    {
        IncidentType.RATE_LIMIT_EXCEEDED,
        IncidentType.OTP_BRUTE_FORCE,
        IncidentType.SUSPICIOUS_PATTERN,
        IncidentType.UNAUTHORIZED_ACCESS,
    }
)

# Forged payment proofs are never a misunderstanding.
PERMANENT_INCIDENTS: frozenset[str] = frozenset(
    {
        IncidentType.PAYMENT_SIGNATURE_INVALID,
        IncidentType.WEBHOOK_SIGNATURE_INVALID,
    }
)

BLOCK_CACHE_PREFIX = "abuse:block:"
ALLOWLIST_CACHE_KEY = "abuse:allowlist"
