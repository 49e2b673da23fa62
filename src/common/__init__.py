"""Shared clients, HTTP helpers and the error taxonomy."""
