import pytest

from revenue_kernel.utils.metrics import PipelineMetrics, drift_exceeds_threshold, drift_pct


@pytest.mark.parametrize(
    "fast,authoritative,expected",
    [
        (100, 120, 20 / 120),
        (130, 120, 10 / 120),
        (120, 120, 0.0),
        (0, 0, 0.0),
        (15, 0, 0.0),
    ],
)
def test_drift_pct_is_unsigned_fraction_of_authoritative(fast, authoritative, expected):
    assert drift_pct(fast, authoritative) == pytest.approx(expected)


def test_drift_threshold_uses_larger_of_abs_and_pct():
    assert drift_exceeds_threshold(-20, 120, abs_threshold=10, pct_threshold=0.01) is True
    assert drift_exceeds_threshold(10, 120, abs_threshold=10, pct_threshold=0.01) is False
    assert drift_exceeds_threshold(15, 10_000, abs_threshold=10, pct_threshold=0.01) is False


def test_pipeline_metrics_counts_and_resets():
    metrics = PipelineMetrics()
    metrics.increment(PipelineMetrics.UPLOAD_CLAIMED, 3)
    metrics.increment(PipelineMetrics.UPLOAD_CLAIMED)
    assert metrics.get(PipelineMetrics.UPLOAD_CLAIMED) == 4
    assert metrics.snapshot()[PipelineMetrics.UPLOAD_CLAIMED] == 4
    metrics.reset()
    assert metrics.get(PipelineMetrics.UPLOAD_CLAIMED) == 0
