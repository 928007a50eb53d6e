"""Shared infrastructure independent of any pipeline domain."""
