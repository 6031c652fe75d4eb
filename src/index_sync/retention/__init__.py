"""Retention sweeping of time-suffixed indices."""
