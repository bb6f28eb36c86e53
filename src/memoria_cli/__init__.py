"""Command-line interface for Memoria."""
