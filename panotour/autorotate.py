import logging
import time

logger = logging.getLogger(__name__)

IDLE = "idle"
COUNTDOWN = "countdown"
ROTATING = "rotating"
CANCELLED = "cancelled"


def monotonic_ms():
    return time.monotonic() * 1000.0


class AutoRotateTimer:
    """Idle countdown followed by ambient yaw rotation.

    Nothing runs in the background: the owner calls `tick()` from its own
    loop and applies the returned yaw delta. `cancel()` is final, so a timer
    that outlives its session can never start rotating again.
    """

    def __init__(self, delay_ms, rate_deg_per_sec, clock=None):
        self.delay_ms = float(delay_ms)
        self.rate = float(rate_deg_per_sec)
        self.clock = clock or monotonic_ms
        self.state = IDLE
        self.deadline = None
        self._last_tick = None

    @property
    def is_rotating(self):
        return self.state == ROTATING

    @property
    def is_cancelled(self):
        return self.state == CANCELLED

    def start(self):
        """(Re)arm the idle countdown, stopping any rotation in progress."""
        if self.state == CANCELLED:
            return False
        if self.state == ROTATING:
            logger.debug("auto-rotate stopped")
        self.state = COUNTDOWN
        self.deadline = self.clock() + self.delay_ms
        self._last_tick = None
        return True

    # Any user input counts the same: stop now, count down again.
    interaction = start
    restart = start

    def tick(self):
        if self.state in (IDLE, CANCELLED):
            return 0.0
        now = self.clock()
        if self.state == COUNTDOWN:
            if now < self.deadline:
                return 0.0
            self.state = ROTATING
            self._last_tick = self.deadline
            logger.debug("auto-rotate started at %.0fms", now)
        elapsed = max(0.0, now - self._last_tick)
        self._last_tick = now
        return self.rate * elapsed / 1000.0

    def cancel(self):
        if self.state != CANCELLED:
            logger.debug("auto-rotate cancelled")
        self.state = CANCELLED
        self.deadline = None
        self._last_tick = None
