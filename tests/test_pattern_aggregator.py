"""Tests for folding element records into patterns."""
from decimal import Decimal

import pytest

from conftest import FakeElementSource, make_record
from packages.domain.classification.errors import EmptyInputError, SourceUnavailableError
from packages.domain.classification.pattern_aggregator import PatternAggregator


@pytest.mark.asyncio
async def test_empty_input_raises():
    aggregator = PatternAggregator(FakeElementSource())
    with pytest.raises(EmptyInputError):
        await aggregator.get_patterns([])


@pytest.mark.asyncio
async def test_groups_by_all_five_fields():
    records = [
        make_record(1),
        make_record(2),
        make_record(3, material="Stainless Steel"),
        make_record(4, location_type="Roof"),
        make_record(5, category="Pipes", family="Copper Pipe", element_type="DN25"),
    ]
    aggregator = PatternAggregator(FakeElementSource(records))

    patterns = await aggregator.get_patterns([1, 2, 3, 4, 5])

    assert len(patterns) == 4
    assert sum(p.element_count for p in patterns) == 5
    covered = sorted(i for p in patterns for i in p.element_ids)
    assert covered == [1, 2, 3, 4, 5]
    # Sorted by grouping key
    assert [p.grouping_key for p in patterns] == sorted(p.grouping_key for p in patterns)


@pytest.mark.asyncio
async def test_null_grouping_fields_group_as_empty():
    records = [
        make_record(1, family=None, element_type=None, material=None, location_type=None),
        make_record(2, family="", element_type="", material="", location_type=""),
    ]
    aggregator = PatternAggregator(FakeElementSource(records))

    patterns = await aggregator.get_patterns([1, 2])

    assert len(patterns) == 1
    assert patterns[0].family == ""
    assert patterns[0].element_count == 2
    assert patterns[0].pattern_key == "Ducts__"


@pytest.mark.asyncio
async def test_dimension_stats():
    records = [
        make_record(1, length=2000, width=600),
        make_record(2, length=3000),
        make_record(3, length=4000, width=300),
    ]
    aggregator = PatternAggregator(FakeElementSource(records))

    [pattern] = await aggregator.get_patterns([1, 2, 3])
    stats = pattern.dimension_stats

    assert stats.length.min == Decimal("2000")
    assert stats.length.max == Decimal("4000")
    assert stats.length.avg == Decimal("3000")
    # Width averages only over the records that supply it
    assert stats.width.min == Decimal("300")
    assert stats.width.avg == Decimal("450")
    assert stats.height is None
    assert stats.diameter is None


@pytest.mark.asyncio
async def test_no_dimensions_means_no_stats():
    aggregator = PatternAggregator(FakeElementSource([make_record(1), make_record(2)]))
    [pattern] = await aggregator.get_patterns([1, 2])
    assert pattern.dimension_stats is None


@pytest.mark.asyncio
async def test_samples_are_smallest_ids_in_order():
    records = [make_record(i) for i in range(1, 101)]
    aggregator = PatternAggregator(FakeElementSource(records))

    [pattern] = await aggregator.get_patterns(list(range(100, 0, -1)), sample_size=5)

    assert [s.element_id for s in pattern.sample_elements] == [1, 2, 3, 4, 5]
    assert pattern.element_count == 100
    assert len(pattern.element_ids) == 100


@pytest.mark.asyncio
async def test_aggregation_is_deterministic():
    records = [make_record(i, length=1000 + i) for i in range(1, 40)]
    first = await PatternAggregator(FakeElementSource(records)).get_patterns(range(1, 40), sample_size=7)
    second = await PatternAggregator(FakeElementSource(reversed(records))).get_patterns(
        list(range(39, 0, -1)), sample_size=7
    )
    assert first == second


@pytest.mark.asyncio
async def test_duplicates_and_missing_ids():
    aggregator = PatternAggregator(FakeElementSource([make_record(1), make_record(2)]))

    [pattern] = await aggregator.get_patterns([1, 1, 2, 2, 99])

    assert pattern.element_count == 2
    assert pattern.element_ids == (1, 2)


@pytest.mark.asyncio
async def test_unknown_ids_only_yield_no_patterns():
    aggregator = PatternAggregator(FakeElementSource([make_record(1)]))
    assert await aggregator.get_patterns([42, 43]) == []


@pytest.mark.asyncio
async def test_source_failure_propagates():
    source = FakeElementSource([make_record(1)])
    source.fail = True
    with pytest.raises(SourceUnavailableError):
        await PatternAggregator(source).get_patterns([1])


@pytest.mark.asyncio
async def test_rejects_non_positive_sample_size():
    with pytest.raises(ValueError):
        await PatternAggregator(FakeElementSource()).get_patterns([1], sample_size=0)
