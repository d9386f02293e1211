"""Tests for partition naming and retrieval scope."""

import pytest

from storerag.common.errors import InvalidPartitionFormat
from storerag.namespaces.registry import (
    ALL_CATEGORIES,
    Category,
    access_policy,
    generate_partition_key,
    list_partitions_for_store,
    normalize_text,
    parse_partition_key,
    resolve_partitions_for_query,
)


def test_partition_key_format():
    assert generate_partition_key("abc", Category.CATALOG) == "store-abc-catalog"
    assert generate_partition_key("abc", "orders") == "store-abc-orders"


def test_parse_handles_hyphenated_store_ids():
    store_id = "6f1c2d3e-aaaa-bbbb-cccc-1234567890ab"
    key = generate_partition_key(store_id, Category.ANALYTICS)
    assert parse_partition_key(key) == (store_id, Category.ANALYTICS)


@pytest.mark.parametrize("key", ["catalog", "store-", "store-abc", "store-abc-widgets", "tienda-abc-catalog"])
def test_parse_rejects_malformed_keys(key):
    with pytest.raises(InvalidPartitionFormat):
        parse_partition_key(key)


def test_every_store_has_six_partitions():
    keys = list_partitions_for_store("s1")
    assert len(keys) == 6
    assert len(set(keys)) == 6
    assert {parse_partition_key(k)[1] for k in keys} == set(ALL_CATEGORIES)


def test_empty_store_id_rejected():
    with pytest.raises(ValueError):
        generate_partition_key("", Category.PROFILE)


def test_normalize_text_strips_accents():
    assert normalize_text("¿Cuánto CUESTA el Catálogo?") == "¿cuanto cuesta el catalogo?"


def test_hint_categories_ranked_by_matches():
    categories = resolve_partitions_for_query("s1", "precio y stock del producto en mis pedidos")
    assert categories[0] == Category.CATALOG
    assert Category.ORDERS in categories


def test_no_hints_falls_back_to_agent_policy():
    assert resolve_partitions_for_query("s1", "hola", "inventory") == access_policy("inventory")


def test_no_hints_and_no_agent_uses_default_scope():
    assert resolve_partitions_for_query("s1", "hola") == [Category.CATALOG, Category.PROFILE, Category.ORDERS]


def test_unknown_agent_gets_general_policy():
    assert access_policy("does-not-exist") == access_policy("general")
