import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base class for business-rule violations surfaced to API callers."""

    kind = "domain_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Request could not be processed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(DomainError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class Unauthorized(DomainError):
    kind = "unauthorized"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You are not allowed to act on this resource"


class ExternalServiceFailure(DomainError):
    kind = "external_service_failure"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Upstream service failed"


def api_exception_handler(exc, context):
    response = exception_handler(exc, context)
    if response is not None:
        return response

    if isinstance(exc, DomainError):
        return Response({"kind": exc.kind, "detail": exc.message}, status=exc.status_code)

    view = context.get("view")
    logger.exception("Unhandled error in %s", view.__class__.__name__ if view else "unknown view")
    return Response(
        {"kind": "internal_error", "detail": "Internal server error"},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
