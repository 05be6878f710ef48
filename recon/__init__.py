"""Association consistency and reconciliation engine.

This package keeps denormalized CRM relationship data consistent: snapshot
sync, location state mirror, entity linking, association materialization
and duplicate resolution, all writing through a bounded batch writer.
"""
