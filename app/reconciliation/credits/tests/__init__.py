"""Tests for reconciliation credits."""
