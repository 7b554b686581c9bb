"""Command line interface for routerchat."""
