"""Sync pipeline and the retry sweep that recovers failed jobs."""
