from datetime import datetime, timedelta

import pytest

from pipelines.stats import (
    bucket_for,
    classify_freshness,
    confidence_score,
    lower_median,
    percentile_cont,
    percentile_cut_points,
    recency_factor,
    sample_factor,
    weighted_average,
)

AS_OF = datetime(2025, 6, 1)


def test_lower_median_picks_lower_middle_for_even_sets():
    assert lower_median([40.0, 10.0, 30.0, 20.0]) == 20.0
    assert lower_median([850_000, 920_000]) == 850_000
    assert lower_median([3.0, 1.0, 2.0]) == 2.0
    assert lower_median([7.0]) == 7.0


def test_lower_median_requires_values():
    with pytest.raises(ValueError):
        lower_median([])


def test_sample_factor_saturates():
    assert sample_factor(0) == 0.0
    assert sample_factor(1) == pytest.approx(0.1505, abs=1e-4)
    assert sample_factor(99) == pytest.approx(1.0)
    assert sample_factor(10_000) == 1.0


def test_recency_factor_is_floored():
    assert recency_factor(0) == 1.0
    assert recency_factor(365 / 2) == pytest.approx(0.5)
    assert recency_factor(365 * 5) == pytest.approx(0.3)
    assert recency_factor(-10) == 1.0


def test_confidence_bounds():
    stale_single = confidence_score(1, AS_OF - timedelta(days=3650), as_of=AS_OF)
    dense_fresh = confidence_score(500, AS_OF, as_of=AS_OF)

    assert 0.0 < stale_single < 0.1
    assert dense_fresh == pytest.approx(1.0)
    assert confidence_score(0, AS_OF, as_of=AS_OF) == 0.0


def test_confidence_grows_with_count_and_recency():
    last_seen = AS_OF - timedelta(days=30)

    assert confidence_score(5, last_seen, as_of=AS_OF) < confidence_score(50, last_seen, as_of=AS_OF)
    assert confidence_score(5, AS_OF - timedelta(days=300), as_of=AS_OF) < confidence_score(
        5, last_seen, as_of=AS_OF
    )


def test_weighted_average_excludes_zero_weight():
    assert weighted_average([100.0, 200.0], [1.0, 3.0]) == pytest.approx(175.0)
    assert weighted_average([100.0], [0.0]) is None


def test_percentile_cont_interpolates():
    values = [10.0, 20.0, 30.0, 40.0]

    assert percentile_cont(values, 0.0) == 10.0
    assert percentile_cont(values, 1.0) == 40.0
    assert percentile_cont(values, 0.5) == pytest.approx(25.0)
    assert percentile_cont(values, 0.1) == pytest.approx(13.0)


def test_cut_points_for_known_distribution():
    cuts = percentile_cut_points([float(v) for v in range(1, 11)])

    assert cuts == pytest.approx((1.9, 3.25, 5.5, 7.75, 9.1))


def test_bucket_for_is_monotonic():
    cuts = percentile_cut_points([float(v) for v in range(1, 101)])
    buckets = [bucket_for(float(v), cuts) for v in range(1, 101)]

    assert buckets == sorted(buckets)
    assert set(buckets) == {0.1, 0.25, 0.5, 0.75, 0.9, 1.0}
    assert bucket_for(1.0, cuts) == 0.1
    assert bucket_for(100.0, cuts) == 1.0


def test_equal_values_share_a_bucket():
    cuts = percentile_cut_points([5.0, 5.0, 5.0, 5.0])

    assert {bucket_for(5.0, cuts)} == {0.1}


def test_classify_freshness():
    assert classify_freshness(AS_OF - timedelta(days=3), AS_OF) == "fresh"
    assert classify_freshness(AS_OF - timedelta(days=20), AS_OF) == "recent"
    assert classify_freshness(AS_OF - timedelta(days=90), AS_OF) == "stale"
    assert classify_freshness(None, AS_OF) == "stale"
