"""Batch and event-driven reconciliation pipelines.

Each step is callable independently so it can run as an operator-invoked
backfill or from a change-event handler.
"""
