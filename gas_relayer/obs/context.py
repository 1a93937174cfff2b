"""Request context helpers using ContextVars.

The instrumentation middleware sets a request id per inbound request so every
log line emitted while handling it can be correlated.
"""

from contextvars import ContextVar
from typing import Optional


# Public ContextVars (names are stable API)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
