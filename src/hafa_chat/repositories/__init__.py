"""Repositories layer."""
