"""Tests for the reconciliation app."""
