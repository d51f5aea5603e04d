"""Tests for RTT classification and hysteresis."""

from __future__ import annotations

from aiomovienight.models.types import NetworkQuality
from aiomovienight.network_quality import (
    CONSTRAINED_THRESHOLDS,
    DESKTOP_THRESHOLDS,
    NetworkQualityClassifier,
    classify_rtt,
)


class TestClassifyRtt:
    def test_desktop_tiers(self) -> None:
        assert classify_rtt(20, DESKTOP_THRESHOLDS) is NetworkQuality.EXCELLENT
        assert classify_rtt(100, DESKTOP_THRESHOLDS) is NetworkQuality.GOOD
        assert classify_rtt(200, DESKTOP_THRESHOLDS) is NetworkQuality.FAIR
        assert classify_rtt(300, DESKTOP_THRESHOLDS) is NetworkQuality.POOR

    def test_constrained_thresholds_are_looser(self) -> None:
        assert classify_rtt(70, CONSTRAINED_THRESHOLDS) is NetworkQuality.EXCELLENT
        assert classify_rtt(70, DESKTOP_THRESHOLDS) is NetworkQuality.GOOD
        assert classify_rtt(350, CONSTRAINED_THRESHOLDS) is NetworkQuality.FAIR


class TestHysteresis:
    def test_starts_good(self) -> None:
        classifier = NetworkQualityClassifier()
        assert classifier.quality is NetworkQuality.GOOD
        assert classifier.last_rtt is None

    def test_single_outlier_does_not_change_tier(self) -> None:
        classifier = NetworkQualityClassifier()
        for _ in range(9):
            classifier.add_sample(100)
        # Average rises to 190 ms: FAIR observed once.
        assert classifier.add_sample(1000) is NetworkQuality.GOOD
        assert classifier.pending is NetworkQuality.FAIR

        # The spike stays in the average, but stable samples must not confirm it.
        for _ in range(3):
            assert classifier.add_sample(100) is NetworkQuality.GOOD
            assert classifier.pending is None

    def test_sustained_slow_samples_still_commit(self) -> None:
        classifier = NetworkQualityClassifier()
        for _ in range(9):
            classifier.add_sample(100)
        classifier.add_sample(1000)
        assert classifier.add_sample(400) is NetworkQuality.FAIR

    def test_two_consecutive_observations_commit(self) -> None:
        classifier = NetworkQualityClassifier()
        assert classifier.add_sample(500) is NetworkQuality.GOOD
        assert classifier.add_sample(500) is NetworkQuality.POOR
        assert classifier.pending is None

    def test_returning_to_current_tier_resets_pending(self) -> None:
        classifier = NetworkQualityClassifier(initial=NetworkQuality.EXCELLENT)
        classifier.add_sample(60)  # average 60: GOOD pending
        assert classifier.pending is NetworkQuality.GOOD
        classifier.add_sample(0)  # average 30: back to EXCELLENT
        assert classifier.pending is None
        classifier.add_sample(100)  # average 53: GOOD observed once more
        assert classifier.quality is NetworkQuality.EXCELLENT
        assert classifier.pending is NetworkQuality.GOOD

    def test_different_pending_tier_restarts_count(self) -> None:
        classifier = NetworkQualityClassifier()
        classifier.add_sample(20)  # EXCELLENT pending
        assert classifier.pending is NetworkQuality.EXCELLENT
        classifier.add_sample(480)  # average 250: FAIR pending, count restarts
        assert classifier.pending is NetworkQuality.FAIR
        assert classifier.quality is NetworkQuality.GOOD

    def test_window_keeps_last_ten_samples(self) -> None:
        classifier = NetworkQualityClassifier()
        for _ in range(10):
            classifier.add_sample(1000)
        for _ in range(11):
            classifier.add_sample(10)
        assert classifier.average_rtt == 10
        assert classifier.quality is NetworkQuality.EXCELLENT
