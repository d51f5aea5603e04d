"""Round-trip time based network quality classification."""

from __future__ import annotations

import logging
from collections import deque
from typing import NamedTuple

from aiomovienight.models import NetworkQuality

logger = logging.getLogger(__name__)

RTT_WINDOW_SIZE = 10
PING_INTERVAL_S = 5.0
HYSTERESIS_OBSERVATIONS = 2
INITIAL_RTT_MS = 100.0


class QualityThresholds(NamedTuple):
    """Upper RTT bounds (exclusive, milliseconds) of the three better tiers."""

    excellent: float
    good: float
    fair: float


DESKTOP_THRESHOLDS = QualityThresholds(excellent=50.0, good=150.0, fair=300.0)
# Mobile radios on the power-constrained profile idle at higher latency.
CONSTRAINED_THRESHOLDS = QualityThresholds(excellent=80.0, good=200.0, fair=400.0)


def classify_rtt(average_rtt_ms: float, thresholds: QualityThresholds) -> NetworkQuality:
    """Map an average RTT onto a quality tier without hysteresis."""
    if average_rtt_ms < thresholds.excellent:
        return NetworkQuality.EXCELLENT
    if average_rtt_ms < thresholds.good:
        return NetworkQuality.GOOD
    if average_rtt_ms < thresholds.fair:
        return NetworkQuality.FAIR
    return NetworkQuality.POOR


class NetworkQualityClassifier:
    """Classify a rolling RTT average into a tier, with hysteresis.

    A new tier is only committed once it has been observed on two consecutive
    classifications. Observing a third, different tier restarts the count for
    that tier instead of accumulating across tiers. A sample that on its own
    falls in the committed tier clears the pending change, so one spike left
    in the average cannot confirm itself.
    """

    def __init__(
        self,
        *,
        constrained: bool = False,
        initial: NetworkQuality = NetworkQuality.GOOD,
    ) -> None:
        """Create a classifier using the desktop or constrained thresholds."""
        self._thresholds = CONSTRAINED_THRESHOLDS if constrained else DESKTOP_THRESHOLDS
        self._samples: deque[float] = deque(maxlen=RTT_WINDOW_SIZE)
        self._quality = initial
        self._pending: NetworkQuality | None = None
        self._pending_count = 0
        self._last_rtt: float | None = None

    @property
    def quality(self) -> NetworkQuality:
        """Return the committed quality tier."""
        return self._quality

    @property
    def last_rtt(self) -> float | None:
        """Return the most recent RTT sample in milliseconds."""
        return self._last_rtt

    @property
    def average_rtt(self) -> float:
        """Return the moving average over the sample window."""
        if not self._samples:
            return INITIAL_RTT_MS
        return sum(self._samples) / len(self._samples)

    @property
    def pending(self) -> NetworkQuality | None:
        """Return the tier waiting for confirmation, if any."""
        return self._pending

    def add_sample(self, rtt_ms: float) -> NetworkQuality:
        """Record an RTT measurement and return the committed tier."""
        self._last_rtt = rtt_ms
        self._samples.append(rtt_ms)
        average = self.average_rtt
        observed = classify_rtt(average, self._thresholds)
        # A sample that sits in the committed tier contradicts any change the
        # average still carries from an earlier outlier.
        contradicted = classify_rtt(rtt_ms, self._thresholds) == self._quality

        if observed == self._quality or contradicted:
            self._pending = None
            self._pending_count = 0
        elif observed == self._pending:
            self._pending_count += 1
            if self._pending_count >= HYSTERESIS_OBSERVATIONS:
                previous = self._quality
                self._quality = observed
                self._pending = None
                self._pending_count = 0
                logger.info(
                    "Network quality: %s -> %s (RTT: %.0fms)",
                    previous.value,
                    observed.value,
                    average,
                )
        else:
            self._pending = observed
            self._pending_count = 1

        return self._quality
