"""Pydantic models for transfer planning."""

from pydantic import BaseModel, ConfigDict, Field, computed_field

from whisperdrop.formatting import format_duration, format_file_size


class TransferPlan(BaseModel):
    """How a file of a given size is chunked and how long it should take.

    Immutable; a changed input produces a new plan.
    """
    model_config = ConfigDict(frozen=True)

    file_size_bytes: int = Field(ge=0)
    chunk_size_bytes: int = Field(gt=0)
    chunk_count: int = Field(ge=0)
    eta_seconds: int = Field(ge=0)

    @computed_field
    @property
    def eta_display(self) -> str:
        return format_duration(self.eta_seconds)

    @computed_field
    @property
    def file_size_display(self) -> str:
        return format_file_size(self.file_size_bytes)


class UploadResult(BaseModel):
    """Response body of the upload endpoint."""
    success: bool
    url: str | None = None
    error: str | None = None
