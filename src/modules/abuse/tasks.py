"""Periodic abuse maintenance."""

import structlog
from celery import shared_task

from modules.abuse.services import AbuseEscalationService

logger = structlog.get_logger(__name__)


@shared_task(name="abuse.expire_blocks")
def expire_blocks() -> dict:
    """Deactivate temporary blocks whose window has passed."""
    expired = AbuseEscalationService().expire_blocks()
    return {"expired": expired}
