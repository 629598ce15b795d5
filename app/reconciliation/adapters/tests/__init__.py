"""Tests for reconciliation adapters."""
