from __future__ import annotations

import contextvars

# Recognition-request correlation id, blank outside a request
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")
