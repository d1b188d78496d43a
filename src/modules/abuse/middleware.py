from typing import Callable

import structlog
from django.conf import settings
from django.http import HttpRequest, HttpResponse, JsonResponse

from modules.abuse.services import AbuseEscalationService
from modules.core.network import get_client_ip

logger = structlog.get_logger()


class BlockedIpMiddleware:
    """Reject requests from blocked source IPs with 403 before routing.

    Allowlisted addresses always pass.  Paths listed in
    ``ABUSE_EXEMPT_PATHS`` (health checks) are never checked.
    """

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response
        self._service = AbuseEscalationService()

    def __call__(self, request: HttpRequest) -> HttpResponse:
        if request.path in settings.ABUSE_EXEMPT_PATHS:
            return self.get_response(request)

        ip = get_client_ip(request.META)
        status = self._service.check(ip)
        if status.blocked:
            logger.warning(
                "abuse.request_rejected",
                ip=ip,
                block_type=status.block_type,
                path=request.path,
            )
            return JsonResponse({"detail": "Access denied."}, status=403)

        return self.get_response(request)
