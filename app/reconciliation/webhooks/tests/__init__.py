"""Tests for reconciliation webhooks."""
