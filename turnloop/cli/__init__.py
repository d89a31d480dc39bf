"""Command line interface for turnloop."""
