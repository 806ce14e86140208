"""Admission workflow definition."""
