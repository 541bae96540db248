"""Shared helpers for the migrator application."""
