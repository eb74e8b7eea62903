#!/usr/bin/env python3
"""Tests for type-aware family merging."""
import pytest

from aggregation_gateway.errors import TypeMismatchError
from aggregation_gateway.labels import canonicalize, sort_key
from aggregation_gateway.merge import merge_buckets, merge_families, merge_metric
from aggregation_gateway.series import Bucket, Metric, MetricType, ValuePayload

from conftest import counter, gauge, histogram, summary, value_family, values_of


def test_counter_merge_sums_values():
    merged = merge_families(
        counter("requests_total", ({"path": "/"}, 3)),
        counter("requests_total", ({"path": "/"}, 4)),
    )
    assert values_of(merged) == {(("path", "/"),): 7}


def test_counter_merge_is_commutative():
    a = counter("requests_total", ({"path": "/"}, 3), ({"path": "/b"}, 1))
    b = counter("requests_total", ({"path": "/"}, 4), ({"path": "/a"}, 2))

    assert values_of(merge_families(a, b)) == values_of(merge_families(b, a))


def test_merge_interleaves_and_keeps_order():
    a = counter("requests_total", ({"path": "/a"}, 1), ({"path": "/c"}, 1))
    b = counter("requests_total", ({"path": "/b"}, 2), ({"path": "/d"}, 2))

    merged = merge_families(a, b)

    assert [m.label_dict()["path"] for m in merged.metrics] == ["/a", "/b", "/c", "/d"]
    keys = [sort_key(m.labels) for m in merged.metrics]
    assert keys == sorted(keys)


def test_merge_keeps_existing_name_and_help():
    a = value_family("queue_depth", MetricType.GAUGE, ({}, 1), help="Depth")
    b = value_family("queue_depth", MetricType.GAUGE, ({}, 2), help="Other help")

    merged = merge_families(a, b)
    assert merged.help == "Depth"
    assert merged.metrics[0].value == 3


def test_gauge_and_untyped_sum():
    assert values_of(merge_families(gauge("temp", ({}, 1.5)), gauge("temp", ({}, 2.0)))) == {(): 3.5}

    a = value_family("thing", MetricType.UNTYPED, ({"x": "1"}, 10))
    b = value_family("thing", MetricType.UNTYPED, ({"x": "1"}, 5))
    assert values_of(merge_families(a, b)) == {(("x", "1"),): 15}


def test_type_mismatch_raises():
    with pytest.raises(TypeMismatchError) as exc_info:
        merge_families(counter("x_total", ({}, 1)), gauge("x_total", ({}, 1)))

    err = exc_info.value
    assert err.family_name == "x_total"
    assert err.existing_type == "counter"
    assert err.incoming_type == "gauge"
    assert "type counter != gauge" in str(err)


def test_histogram_bucket_merge():
    a = histogram("latency", {}, 2, 0.5, {1.0: 2})
    b = histogram("latency", {}, 4, 2.5, {1.0: 3, 2.0: 1})

    merged = merge_families(a, b).metrics[0].payload

    assert merged.sample_count == 6
    assert merged.sample_sum == 3.0
    assert merged.buckets == (Bucket(1.0, 5), Bucket(2.0, 1))


def test_merge_buckets_interleaves_unequal_bounds():
    a = [Bucket(0.1, 1), Bucket(1.0, 3)]
    b = [Bucket(0.5, 2), Bucket(1.0, 1), Bucket(5.0, 7)]

    assert merge_buckets(a, b) == [
        Bucket(0.1, 1), Bucket(0.5, 2), Bucket(1.0, 4), Bucket(5.0, 7)
    ]
    assert merge_buckets([], b) == b


def test_summary_series_are_dropped():
    dropped = []
    a = summary("rpc_seconds", {"svc": "a"}, 1, 0.1)
    b = summary("rpc_seconds", {"svc": "a"}, 2, 0.2)

    merged = merge_families(a, b, on_unmergeable=lambda name, m: dropped.append((name, m)))

    assert merged.metrics == ()
    assert len(dropped) == 1
    assert dropped[0][0] == "rpc_seconds"


def test_summary_series_without_partner_pass_through():
    a = summary("rpc_seconds", {"svc": "a"}, 1, 0.1)
    b = summary("rpc_seconds", {"svc": "b"}, 2, 0.2)

    merged = merge_families(a, b)
    assert [m.label_dict()["svc"] for m in merged.metrics] == ["a", "b"]


def test_merge_metric_summary_returns_none():
    m = Metric(canonicalize({}), ValuePayload(1.0))
    assert merge_metric(MetricType.SUMMARY, m, m) is None
    assert merge_metric(MetricType.COUNTER, m, m).value == 2.0
