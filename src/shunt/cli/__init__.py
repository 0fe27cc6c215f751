"""Command-line interface for shunt."""
