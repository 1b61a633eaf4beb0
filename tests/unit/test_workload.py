from __future__ import annotations

import random
from collections import Counter

import pytest

from rr_bench.domain.models import ENTITY_SCHEMAS, EntityKind, OpAction, WriteOperation
from rr_bench.errors import EmptyRegistryError
from rr_bench.workload.catalog import (
    QUERY_CATALOG,
    ParamKind,
    WeightedChoice,
    get_query,
    query_chooser,
    sample_params,
)
from rr_bench.workload.generator import UPDATE_KINDS, OperationGenerator
from rr_bench.workload.registry import VisibleIdRegistry

EXPECTED_QUERY_COUNT = 16
DRAWS = 20_000
RATIO_TOLERANCE = 0.02


def test_catalog_has_sixteen_uniquely_named_queries() -> None:
    names = [query.name for query in QUERY_CATALOG]

    assert len(names) == EXPECTED_QUERY_COUNT
    assert len(set(names)) == EXPECTED_QUERY_COUNT


def test_query_sql_binds_parameter_columns() -> None:
    assert get_query("top_performers").sql() == "SELECT * FROM top_performers"
    assert (
        get_query("customer_portfolio").sql("%s")
        == "SELECT * FROM customer_portfolio WHERE customer_id = %s"
    )
    assert get_query("pending_orders_summary").params == (ParamKind.TICKER,)


def test_get_query_rejects_unknown_names() -> None:
    with pytest.raises(KeyError):
        get_query("no_such_view")


def test_weighted_choice_converges_to_weights() -> None:
    chooser = WeightedChoice(["a", "b", "c"], [45, 45, 10])
    rng = random.Random(42)

    counts = Counter(chooser.choose(rng) for _ in range(DRAWS))

    assert counts["a"] / DRAWS == pytest.approx(0.45, abs=RATIO_TOLERANCE)
    assert counts["b"] / DRAWS == pytest.approx(0.45, abs=RATIO_TOLERANCE)
    assert counts["c"] / DRAWS == pytest.approx(0.10, abs=RATIO_TOLERANCE)
    assert chooser.probability("c") == pytest.approx(0.10)


def test_weighted_choice_is_deterministic_for_a_seed() -> None:
    chooser = WeightedChoice(["x", "y", "z"], [1, 2, 3])

    first = [chooser.choose(random.Random(7)) for _ in range(5)]
    second = [chooser.choose(random.Random(7)) for _ in range(5)]

    assert first == second


def test_weighted_choice_skips_zero_weights_and_validates() -> None:
    chooser = WeightedChoice(["never", "always"], [0, 1])
    rng = random.Random(1)

    assert {chooser.choose(rng) for _ in range(100)} == {"always"}
    with pytest.raises(ValueError):
        WeightedChoice(["a"], [0])
    with pytest.raises(ValueError):
        WeightedChoice(["a"], [-1])
    with pytest.raises(ValueError):
        WeightedChoice(["a", "b"], [1])


def test_query_chooser_applies_partial_weights() -> None:
    chooser = query_chooser(weights={"top_performers": 0.0, "market_overview": 15.0})

    assert get_query("top_performers") not in chooser.items
    assert chooser.probability(get_query("market_overview")) == pytest.approx(15 / 29)
    with pytest.raises(KeyError):
        query_chooser(weights={"nope": 1.0})


def test_sample_params_draws_live_values(registry: VisibleIdRegistry) -> None:
    rng = random.Random(0)

    for query in QUERY_CATALOG:
        params = sample_params(query, registry, rng)
        assert len(params) == len(query.params)
        for param, value in zip(query.params, params):
            if param is ParamKind.CUSTOMER_ID:
                assert registry.contains(EntityKind.CUSTOMER, value)
            elif param is ParamKind.SECTOR:
                assert value in registry.known_sectors()


def test_sample_params_raises_on_empty_registry() -> None:
    with pytest.raises(EmptyRegistryError):
        sample_params(get_query("customer_portfolio"), VisibleIdRegistry(), random.Random(0))
    assert sample_params(get_query("top_performers"), VisibleIdRegistry(), random.Random(0)) == ()


def test_generated_inserts_reference_live_parents(registry: VisibleIdRegistry) -> None:
    generator = OperationGenerator(registry, random.Random(11))

    for _ in range(500):
        op = generator.generate(OpAction.INSERT)
        assert op.target_id is None
        for column, parent_kind in ENTITY_SCHEMAS[op.entity].parents.items():
            assert registry.contains(parent_kind, op.values[column])


def test_generated_updates_never_touch_securities(registry: VisibleIdRegistry) -> None:
    generator = OperationGenerator(registry, random.Random(5))

    kinds = {generator.generate(OpAction.UPDATE).entity for _ in range(500)}

    assert kinds == set(UPDATE_KINDS)
    assert EntityKind.SECURITY not in kinds


def test_generated_deletes_cover_every_kind(registry: VisibleIdRegistry) -> None:
    generator = OperationGenerator(registry, random.Random(5))

    ops = [generator.generate(OpAction.DELETE) for _ in range(600)]

    assert {op.entity for op in ops} == set(EntityKind)
    assert all(registry.contains(op.entity, op.target_id) for op in ops)
    assert all(not op.values for op in ops)


def test_generator_is_deterministic_for_a_seed(registry: VisibleIdRegistry) -> None:
    first = OperationGenerator(registry, random.Random(9))
    second = OperationGenerator(registry, random.Random(9))

    for action in [OpAction.INSERT, OpAction.UPDATE, OpAction.DELETE] * 20:
        assert first.generate(action) == second.generate(action)


def test_generator_raises_when_no_parent_exists() -> None:
    empty = VisibleIdRegistry()
    generator = OperationGenerator(empty, random.Random(0))

    with pytest.raises(EmptyRegistryError):
        for _ in range(50):
            generator.generate(OpAction.UPDATE)


def test_write_operation_validates_shape() -> None:
    with pytest.raises(ValueError):
        WriteOperation(action=OpAction.INSERT, entity=EntityKind.TRADE, values={"quantity": 1})
    with pytest.raises(ValueError):
        WriteOperation(action=OpAction.DELETE, entity=EntityKind.TRADE)
    with pytest.raises(ValueError):
        WriteOperation(
            action=OpAction.UPDATE, entity=EntityKind.CUSTOMER, target_id=1, values={"name": "x"}
        )

    op = WriteOperation(action=OpAction.DELETE, entity=EntityKind.MARKET_DATA, target_id=3)
    assert op.name == "delete_market_data"
