"""Service-level tests for checkout, finalization and supporting services."""
