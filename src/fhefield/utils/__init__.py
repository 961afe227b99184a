"""Shared utilities: configuration."""
