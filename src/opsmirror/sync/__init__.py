"""Synchronization and identity-resolution engine."""
