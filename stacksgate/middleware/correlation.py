"""Request correlation ids.

Every response carries ``X-Request-ID``: the caller's value when one is sent,
otherwise a fresh UUID4. The same id is attached to log entries by
``stacksgate.core.logging.add_correlation_id`` and echoed in error bodies.
"""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"


def setup_correlation_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        generator=lambda: str(uuid.uuid4()),
        validator=None,  # merchants' own request ids are echoed verbatim
    )


def get_correlation_id() -> str | None:
    return correlation_id.get(None)
