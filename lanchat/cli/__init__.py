"""Command-line interface for lanchat."""
