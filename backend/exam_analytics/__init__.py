"""Application package for the test-attempt scoring and analytics backend.

This package exposes the service, repository and model modules used by
the FastAPI application. Scoring and telemetry normalization live in the
`utils` sub-package as plain functions so they can be exercised without
a database.
"""
