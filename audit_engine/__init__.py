"""Audit & Security Event Engine."""
