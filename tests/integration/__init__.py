"""Integration test suite for end-to-end flows.

Covers the full store journey (connect, index, query, reconnect, delete)
wired through the in-memory backends with fake capabilities.
"""
