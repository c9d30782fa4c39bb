"""Command-line tools for the model engine."""
