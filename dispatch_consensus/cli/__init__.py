"""Command-line interface for dispatch consensus agents."""
