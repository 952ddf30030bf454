"""
Credential redaction for URLs that end up in access logs and span attributes.

``GET /api/v1/users/validate?token=...`` carries the login token in the query
string, so anything that records the request target must go through here.
"""

import logging
from urllib.parse import unquote_plus

from .time_utils import mask_token

SENSITIVE_QUERY_PARAMS = frozenset({"token", "loginToken", "login_token"})


def redact_query(query: str) -> str:
    """Mask the values of credential parameters in a raw query string."""
    if not query:
        return query

    parts = []
    for part in query.split("&"):
        key, sep, value = part.partition("=")
        if sep and unquote_plus(key) in SENSITIVE_QUERY_PARAMS:
            part = f"{key}={mask_token(unquote_plus(value))}"
        parts.append(part)
    return "&".join(parts)


def redact_path(full_path: str) -> str:
    """Redact the query part of ``path?query``."""
    path, sep, query = full_path.partition("?")
    if not sep:
        return full_path
    return f"{path}?{redact_query(query)}"


class AccessLogRedactionFilter(logging.Filter):
    """
    Rewrite the request target of uvicorn access records.

    uvicorn logs ``(client_addr, method, full_path, http_version, status_code)``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        args = record.args
        if isinstance(args, tuple) and len(args) == 5 and isinstance(args[2], str):
            record.args = (args[0], args[1], redact_path(args[2]), args[3], args[4])
        return True


def install_access_log_redaction(logger_name: str = "uvicorn.access") -> None:
    access_logger = logging.getLogger(logger_name)
    if not any(isinstance(f, AccessLogRedactionFilter) for f in access_logger.filters):
        access_logger.addFilter(AccessLogRedactionFilter())
