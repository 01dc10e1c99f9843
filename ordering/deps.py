import logging
import uuid
from contextvars import ContextVar
from typing import Optional

from fastapi import Header

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


async def get_correlation_id(x_correlation_id: Optional[str] = Header(None)):
    # async so the contextvar is set in the request task, not a worker thread
    cid = x_correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


class CorrelationIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id_var.get()
        return True
