"""Backend package: DB models, roster pipelines, APIs.

This package orchestrates roster decoding, row normalization, duplicate
resolution, enrollment and welcome notifications for the admin portal.
"""
