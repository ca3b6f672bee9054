"""
Client for the external accrual service.

One GET per order number; the reply is translated into an ``AccrualReply``
or a ``RetryAfter`` throttle signal. Network and decoding failures raise
``AccrualTransportError``. Retrying is left to the caller.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Literal, Optional, Union

import requests
from pydantic import BaseModel, ValidationError

from common.error_handling import ServiceError, ErrorCodes
from common.tracing import get_trace_headers

logger = logging.getLogger(__name__)

ACCRUAL_REGISTERED = "REGISTERED"
ACCRUAL_PROCESSING = "PROCESSING"
ACCRUAL_INVALID = "INVALID"
ACCRUAL_PROCESSED = "PROCESSED"


class AccrualReply(BaseModel):
    order: str
    status: Literal["REGISTERED", "PROCESSING", "INVALID", "PROCESSED"]
    accrual: Decimal = Decimal("0")


@dataclass(frozen=True)
class RetryAfter:
    """The accrual service asked for no queries for ``seconds``."""
    seconds: int


class AccrualTransportError(ServiceError):
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.ACCRUAL_UNAVAILABLE, message, original_error)


def parse_retry_after(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        seconds = int(value.strip())
    except ValueError:
        return default
    return max(seconds, 0)


class AccrualClient:
    def __init__(self, base_url: str, timeout: float = 5.0, default_retry_after: int = 60,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.default_retry_after = default_retry_after
        self.session = session or requests.Session()

    def query(self, number: str) -> Union[AccrualReply, RetryAfter]:
        url = f"{self.base_url}/api/orders/{number}"
        try:
            resp = self.session.get(url, timeout=self.timeout, headers=get_trace_headers())
        except requests.RequestException as e:
            raise AccrualTransportError(f"accrual request for {number} failed: {e}", e)

        if resp.status_code == 429:
            seconds = parse_retry_after(resp.headers.get("Retry-After"), self.default_retry_after)
            logger.warning(f"Accrual service throttled us for {seconds}s")
            return RetryAfter(seconds)

        if resp.status_code == 204:
            # not known to the accrual service yet
            return AccrualReply(order=number, status=ACCRUAL_REGISTERED)

        if resp.status_code != 200:
            raise AccrualTransportError(f"accrual service answered {resp.status_code} for {number}")

        try:
            reply = AccrualReply.model_validate_json(resp.content)
        except ValidationError as e:
            raise AccrualTransportError(f"undecodable accrual reply for {number}", e)
        return reply
