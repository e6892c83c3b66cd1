"""Core settings, logging and clock helpers."""
