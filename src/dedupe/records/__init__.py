"""Record store -- models, schemas and repository for mirrored CRM records.

Provides SQLAlchemy models (Record, SyncJob, DuplicateGroup, StagedEdit,
StagedRemoval, MergeRecord), Pydantic schemas for every row and operation
result, and DedupeRepository for scoped async data access.
"""
