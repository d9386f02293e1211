"""Partition naming and retrieval-scope policy."""

from .registry import (
    ALL_CATEGORIES,
    CATEGORY_POLICIES,
    Category,
    CategoryPolicy,
    access_policy,
    generate_partition_key,
    list_partitions_for_store,
    parse_partition_key,
    resolve_partitions_for_query,
    retention_cutoff,
)

__all__ = [
    "ALL_CATEGORIES",
    "CATEGORY_POLICIES",
    "Category",
    "CategoryPolicy",
    "access_policy",
    "generate_partition_key",
    "list_partitions_for_store",
    "parse_partition_key",
    "resolve_partitions_for_query",
    "retention_cutoff",
]
