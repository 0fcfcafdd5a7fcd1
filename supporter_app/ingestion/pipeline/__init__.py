"""Ingestion pipeline: identity, event store, merge and the scheduled jobs."""
