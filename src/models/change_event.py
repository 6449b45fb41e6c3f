"""Live change feed event model."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ChangeOp(str, Enum):
    """Row operation reported by the feed."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """One insert/update/delete notification for a table row."""
    op: ChangeOp
    table: str
    record: dict[str, Any] = Field(default_factory=dict, description="Row after the change")
    old_record: dict[str, Any] = Field(default_factory=dict, description="Row before the change (may hold only the key)")

    @property
    def row_id(self) -> Optional[str]:
        row_id = self.record.get("id") or self.old_record.get("id")
        return str(row_id) if row_id is not None else None
