"""Reusable test helpers for formrunner tests."""
