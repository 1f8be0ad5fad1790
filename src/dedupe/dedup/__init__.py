"""Duplicate detection -- exact-match grouping under ordered conditions."""
