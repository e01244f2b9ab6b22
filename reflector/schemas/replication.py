"""Pydantic schemas for the replication config file."""

from typing import List
from pydantic import BaseModel


class RuleSchema(BaseModel):
    """One replication rule as written in the config file."""
    source: str
    destination: List[str]


class ReplicationFile(BaseModel):
    """Whole config file: either a bare list of rules or {rules: [...]}."""
    rules: List[RuleSchema]
