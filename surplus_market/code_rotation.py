"""
Periodic pickup code rotation.

Each tick is stateless: one indexed query picks the orders still awaiting pickup
whose code is missing or has outlived PICKUP_CODE_TTL_SECONDS, and gives each a
fresh code. Codes still inside their window are left alone. The write is
conditional on the row, so an order picked up or cancelled after the query
keeps its cleared code. A tick that dies half way only leaves some codes stale
until the next one.
"""
import datetime as dt
import logging
import threading
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .config import CODE_ROTATION_INTERVAL_SECONDS, PICKUP_CODE_TTL_SECONDS
from .crud.orders import AWAITING_PICKUP, rotate_code
from .crud.reservations import purge_expired_reservations
from .models import Order
from .pickup_codes import code_is_expired

logger = logging.getLogger(__name__)


def rotate_due_codes(db: Session, now: Optional[dt.datetime] = None) -> int:
    """Issue new codes where needed and return how many orders were rotated."""
    now = now or dt.datetime.now(dt.timezone.utc)
    cutoff = now - dt.timedelta(seconds=PICKUP_CODE_TTL_SECONDS)

    due = (
        db.query(Order)
        .filter(
            Order.status.in_(AWAITING_PICKUP),
            or_(Order.code_generated_at.is_(None), Order.code_generated_at < cutoff),
        )
        .all()
    )

    rotated = 0
    for order in due:
        if not code_is_expired(order.code_generated_at, now=now):
            continue
        if rotate_code(db, order.id, now=now, stale_before=cutoff) is None:
            logger.debug("order=%s moved on before its code was rotated", order.id)
            continue
        rotated += 1

    if rotated:
        db.commit()
        logger.info("rotated pickup codes for %s orders", rotated)
    return rotated


class CodeRotationWorker:
    """Runs rotate_due_codes() every ``interval`` seconds on a daemon thread."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        interval: float = CODE_ROTATION_INTERVAL_SECONDS,
    ) -> None:
        if interval > PICKUP_CODE_TTL_SECONDS:
            logger.warning(
                "rotation interval %ss exceeds code TTL %ss; clamping to the TTL",
                interval, PICKUP_CODE_TTL_SECONDS,
            )
            interval = PICKUP_CODE_TTL_SECONDS
        self.session_factory = session_factory
        self.interval = max(1, interval)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> int:
        db = self.session_factory()
        try:
            rotated = rotate_due_codes(db)
            purged = purge_expired_reservations(db)
            if purged:
                logger.debug("purged %s expired reservations", purged)
            return rotated
        finally:
            db.close()

    def _run(self) -> None:
        logger.info("code rotation started, interval=%ss", self.interval)
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("code rotation tick failed")
            self._stop.wait(self.interval)
        logger.info("code rotation stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="code-rotation", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
