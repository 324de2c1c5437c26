"""Shared settings, errors, logging and event plumbing."""
