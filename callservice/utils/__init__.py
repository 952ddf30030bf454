# Utilities module

from .time_utils import (
    isoformat,
    mask_token,
    parse_timestamp,
    resolve_timezone,
    start_of_local_day,
    utc_now,
)
from .redaction import (
    AccessLogRedactionFilter,
    install_access_log_redaction,
    redact_path,
    redact_query,
)

__all__ = [
    "AccessLogRedactionFilter",
    "install_access_log_redaction",
    "redact_path",
    "redact_query",
    "isoformat",
    "mask_token",
    "parse_timestamp",
    "resolve_timezone",
    "start_of_local_day",
    "utc_now",
]
