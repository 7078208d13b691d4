from pydantic import BaseModel
from typing import Literal, Optional


class ProgressResponse(BaseModel):
    progress: float
    status: Literal["processing", "complete", "failed"]


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    ffmpeg: bool = True


class ErrorResponse(BaseModel):
    error: str
    details: Optional[str] = None
