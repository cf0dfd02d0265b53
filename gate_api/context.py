"""Request context management for observability.

Context variables carried across async boundaries and picked up by the JSON
log formatter.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Webhook event currently being ingested (idempotency key)
event_id_var: ContextVar[str] = ContextVar("event_id", default="")

# Outcome of the last access decision in this request (allow / deny reason)
access_decision_var: ContextVar[str] = ContextVar("access_decision", default="")
