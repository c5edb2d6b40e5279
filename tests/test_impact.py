"""Tests for impact assessment."""

import pytest

from deploy_autofix.classifier import ErrorReport, ReportContext
from deploy_autofix.impact import ImpactAssessment, ImpactAssessor, Severity, severity_for


def assess(message, path=None):
    return ImpactAssessor().assess(ErrorReport(message, ReportContext(path=path)))


class TestImpactAssessor:
    def test_user_facing(self):
        impact = assess("503 Service Unavailable")
        assert impact.user_facing is True
        assert impact.overall_score == pytest.approx(0.3)
        assert impact.severity == Severity.MEDIUM

    def test_business_critical_path(self):
        impact = assess("boom", path="/checkout/confirm")
        assert impact.business_critical is True
        assert impact.user_facing is False

    def test_data_integrity(self):
        impact = assess("ECONNREFUSED database unreachable")
        assert impact.data_integrity is True
        assert impact.user_facing is False
        assert impact.overall_score == pytest.approx(0.2)
        assert impact.severity == Severity.LOW

    def test_everything_is_critical(self):
        impact = assess(
            "500 server error: database transaction failed, health check failed",
            path="/payment",
        )
        assert impact.overall_score == pytest.approx(1.0)
        assert impact.severity == Severity.CRITICAL

    def test_nothing_matches(self):
        assert assess("a harmless notice") == ImpactAssessment()


class TestSeverity:
    @pytest.mark.parametrize(
        "score,expected",
        [
            (0.0, Severity.LOW),
            (0.29, Severity.LOW),
            (0.3, Severity.MEDIUM),
            (0.6, Severity.HIGH),
            (0.8, Severity.CRITICAL),
            (1.0, Severity.CRITICAL),
        ],
    )
    def test_bands(self, score, expected):
        assert severity_for(score) == expected

    def test_from_flags_rounds_weights(self):
        impact = ImpactAssessment.from_flags(user_facing=True, business_critical=True)
        assert impact.overall_score == 0.7
        assert impact.severity == Severity.HIGH
