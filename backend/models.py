from pydantic import BaseModel, Field
from typing import List, Optional


class DecodeRequest(BaseModel):
    url: str
    up_axis: str = Field("Y", pattern="^[XYZxyz]$")
    transform: Optional[List[float]] = Field(None, min_length=16, max_length=16)
    root_index: int = 0


class TileSummaryResponse(BaseModel):
    url: str
    magic: str
    summary: dict
    transferables: int = 0


class AbortResponse(BaseModel):
    url: str
    aborted: bool
