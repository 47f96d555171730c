"""Data models for the memory store."""

from pydantic import BaseModel, Field

MAX_LIMIT = 100


class MemoryInput(BaseModel):
    """One memory to upsert, validated before any I/O."""

    key: str = Field(
        min_length=1,
        description="The key to store the memory under. This is the main identifier of the memory.",
    )
    value: str = Field(
        min_length=1,
        description=(
            "The content of the memory. Keep it concise but detailed; it is "
            "embedded for semantic search."
        ),
    )
    tags: list[str] = Field(
        default_factory=list,
        description="Tags that can be used to search the memory store.",
    )


class MemoryRecord(BaseModel):
    """A memory row as returned to callers."""

    id: int
    key: str
    value: str
    tags: list[str] = Field(default_factory=list)
    created_at: str = ""
    similarity_score: float | None = None  # cosine distance, smaller is closer


class MemoryResult(BaseModel):
    """Outcome of a memory store operation. Never raised, always returned."""

    success: bool
    error: str | None = None
    message: str | None = None
    results: list[MemoryRecord] | None = None
    count: int | None = None

    @classmethod
    def failure(cls, error: str) -> "MemoryResult":
        return cls(success=False, error=error)

    def to_payload(self) -> dict:
        """Plain dict for tool results, omitting unset fields."""
        return self.model_dump(exclude_none=True)
