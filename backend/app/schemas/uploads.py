from pydantic import BaseModel


class UploadResponse(BaseModel):
    """Location of a stored object; ``publicUrl`` is a signed URL for private buckets."""

    publicUrl: str | None = None
    path: str


class HealthResponse(BaseModel):
    ok: bool
    rows: int = 0
