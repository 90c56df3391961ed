"""Shared value types.

These types are used by both the pipeline runner and the agent layer:
- Tier: size class of a changeset
- DiffStats: summary of a changeset against its base branch
"""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class Tier(str, Enum):
    """Size tier of a changeset.

    The tier selects the default set of quality agents to run.

    Attributes:
        SMALL: A handful of files and lines.
        MEDIUM: A typical feature change.
        LARGE: Anything bigger than medium.
    """

    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class DiffStats(BaseModel):
    """Summary of a changeset against its base branch.

    Attributes:
        files_changed: Number of files touched.
        lines_added: Lines inserted across all files.
        lines_deleted: Lines removed across all files.
        changed_files: Paths of the touched files, relative to the repo root.
    """

    files_changed: int = Field(default=0, ge=0)
    lines_added: int = Field(default=0, ge=0)
    lines_deleted: int = Field(default=0, ge=0)
    changed_files: List[str] = Field(default_factory=list)

    @property
    def lines_changed(self) -> int:
        return self.lines_added + self.lines_deleted
