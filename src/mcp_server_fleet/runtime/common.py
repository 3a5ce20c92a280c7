
import json
import logging
import sys
from datetime import datetime, timezone

from .errors import FleetError

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger("fleet")


def configure_logging(level="WARNING"):
    """Send fleet logs to stderr; stdout is reserved for the MCP stdio transport."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.WARNING),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def make_response(success: bool, data=None, error=None, error_code=None):
    """Standardized API response formatter."""
    return json.dumps({
        "success": success,
        "data": data,
        "error": error,
        "error_code": error_code,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    }, indent=2)


def error_response(error: Exception):
    """Map an exception onto the response envelope."""
    if isinstance(error, FleetError):
        return make_response(False, error=error.message, error_code=error.code)
    if isinstance(error, ValueError):
        return make_response(False, error=str(error), error_code="ERR_VALIDATION")
    logger.error(f"Unexpected error: {error}")
    return make_response(False, error=str(error), error_code="ERR_INTERNAL")
