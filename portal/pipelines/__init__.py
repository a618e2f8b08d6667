"""Roster ingestion pipelines: normalization, deduplication, enrollment.

Each stage is callable on its own so the bulk upload endpoints and the
single-record endpoints share the same resolve -> commit -> notify path.
"""
