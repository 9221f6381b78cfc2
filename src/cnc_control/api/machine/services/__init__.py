"""Machine control services."""
