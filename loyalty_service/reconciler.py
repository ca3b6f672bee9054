import logging, threading
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from common.error_handling import BusinessLogicError
from common.tracing import reconciler_tracer
from .accrual import (
    AccrualClient, AccrualTransportError, RetryAfter,
    ACCRUAL_INVALID, ACCRUAL_PROCESSED,
)
from .storage import Storage

logger = logging.getLogger(__name__)

POLL_INTERVAL = 3.0


@dataclass
class CycleReport:
    claimed: int = 0
    processed: int = 0
    invalid: int = 0
    pending: int = 0
    failed: int = 0
    throttled: int = 0


class Reconciler:
    """Polls the accrual service for claimed orders and applies the verdicts.

    ``wait`` blocks for the given number of seconds and returns True when the
    loop has been asked to stop. It defaults to the stop event's ``wait`` so
    that ``stop()`` interrupts both the poll interval and throttle pauses.
    """

    def __init__(self, storage: Storage, client: AccrualClient, interval: float = POLL_INTERVAL,
                 wait: Optional[Callable[[float], bool]] = None):
        self.storage = storage
        self.client = client
        self.interval = interval
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self._thread: Optional[threading.Thread] = None

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run_cycle(self) -> CycleReport:
        report = CycleReport()
        with reconciler_tracer.start_span("reconcile_cycle") as span:
            orders = self.storage.claim_pending()
            report.claimed = len(orders)
            for order in orders:
                if self.stopping:
                    break
                self._reconcile(order.number, report)
            span.add_tag("orders.claimed", report.claimed)
            span.add_tag("orders.processed", report.processed)

        if report.claimed:
            logger.info(f"Reconcile cycle: {report}")
        return report

    def _reconcile(self, number: str, report: CycleReport):
        while True:
            try:
                reply = self.client.query(number)
            except AccrualTransportError as e:
                logger.warning(f"Accrual query for {number} failed, retrying next cycle: {e}")
                report.failed += 1
                return

            if not isinstance(reply, RetryAfter):
                break
            # global throttle: nothing is queried until the pause is over.
            # A zero delay still waits one poll interval.
            report.throttled += 1
            pause = reply.seconds if reply.seconds > 0 else self.interval
            if self._wait(pause):
                return

        try:
            if reply.status == ACCRUAL_PROCESSED:
                self.storage.mark_processed(number, reply.accrual)
                report.processed += 1
            elif reply.status == ACCRUAL_INVALID:
                self.storage.mark_invalid(number)
                report.invalid += 1
            else:
                report.pending += 1
        except (SQLAlchemyError, BusinessLogicError) as e:
            logger.error(f"Failed to apply accrual verdict for {number}: {e}")
            report.failed += 1

    def run_forever(self):
        logger.info(f"Reconciler started, polling every {self.interval}s")
        while not self.stopping:
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Reconcile cycle failed")
            if self._wait(self.interval):
                break
        logger.info("Reconciler stopped")

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="reconciler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
