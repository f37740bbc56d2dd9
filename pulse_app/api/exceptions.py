import logging

from rest_framework.response import Response
from rest_framework.views import exception_handler

from pulse_app.surveys.exceptions import PulseError

logger = logging.getLogger(__name__)


def pulse_exception_handler(exc, context):
    """Render engine outcomes as ``{"error": ..., "code": ...}``.

    Anything that is not a ``PulseError`` goes through DRF's default handler.
    """
    if isinstance(exc, PulseError):
        view = context.get("view")
        logger.info(
            f"{type(exc).__name__} in {type(view).__name__ if view else 'view'}: "
            f"{exc.message}"
        )
        return Response(
            {"error": exc.message, "code": exc.code}, status=exc.status_code
        )
    return exception_handler(exc, context)
