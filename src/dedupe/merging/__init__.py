"""Merge orchestration -- group resolution, CRM merges, finish and export."""
