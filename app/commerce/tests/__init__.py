"""Tests for the commerce app."""
