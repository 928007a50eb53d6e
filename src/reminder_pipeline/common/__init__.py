"""Common infrastructure shared across the reminder pipeline."""
