"""Pydantic schemas for the reflector's input files."""

from reflector.schemas.replication import ReplicationFile, RuleSchema

__all__ = ["ReplicationFile", "RuleSchema"]
