"""File change data models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ChangeOperation(str, Enum):
    """Operation applied to a single repository path."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class FileChange(BaseModel):
    """One file edit in a commit batch.

    ``content`` holds raw bytes; a ``str`` is accepted and stored UTF-8
    encoded. Semantic checks (path safety, operation/content pairing, size
    ceiling) happen in ``validate_changes`` so a batch is rejected as a whole.
    """

    path: str
    operation: ChangeOperation
    content: Optional[bytes] = None

    @property
    def size(self) -> int:
        return len(self.content) if self.content is not None else 0
