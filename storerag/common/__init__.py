"""Shared configuration, logging, metrics, events and resilience helpers."""
