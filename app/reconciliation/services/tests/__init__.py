"""Tests for reconciliation services."""
