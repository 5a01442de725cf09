import logging
from typing import Optional

from fastapi import APIRouter, File, HTTPException, Query, UploadFile

from tiledecoder.assembler import summarize
from tiledecoder.errors import MissingContentError, NetworkError, UnrecognizedFormatError
from tiledecoder.models import TileContentRequest, TileResult

from backend import config
from backend.models import AbortResponse, DecodeRequest, TileSummaryResponse
from backend.workers import pool_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tiles", tags=["tiles"])


def _raise_for_error(error: Exception) -> None:
    if isinstance(error, MissingContentError):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, UnrecognizedFormatError):
        raise HTTPException(status_code=422, detail=str(error))
    if isinstance(error, NetworkError):
        raise HTTPException(status_code=error.status or 502, detail=str(error))
    raise HTTPException(status_code=422, detail=str(error))


async def _decode(request: TileContentRequest) -> TileSummaryResponse:
    try:
        result: Optional[TileResult] = await pool_manager.decode(request)
    except ValueError as exc:
        # malformed tileset JSON
        raise HTTPException(status_code=422, detail=f"Invalid tileset JSON: {exc}")
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    if result is None:
        raise HTTPException(status_code=409, detail=f"Request aborted: {request.url}")
    if result.error is not None:
        _raise_for_error(result.error)

    summary = summarize(result.content)
    return TileSummaryResponse(
        url=request.url,
        magic=summary.get("magic", ""),
        summary=summary,
        transferables=len(result.transferables),
    )


@router.post("/decode", response_model=TileSummaryResponse)
async def decode_tile(request: DecodeRequest):
    """Fetch, decode and reproject the tile at ``url``.

    The heavy lifting happens on a pool thread; this handler only awaits the
    result and reports a summary of the decoded content.
    """
    tile_request = TileContentRequest(
        url=request.url,
        root_index=request.root_index,
        up_axis=request.up_axis.upper(),
        transform=request.transform,
    )
    return await _decode(tile_request)


@router.post("/decode/upload", response_model=TileSummaryResponse)
async def decode_upload(file: UploadFile = File(...), up_axis: str = Query("Y", pattern="^[XYZxyz]$")):
    """Decode an uploaded tile body instead of fetching one."""
    data = await file.read()
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Tile upload too large")
    if not data:
        raise HTTPException(status_code=422, detail="Empty upload")
    tile_request = TileContentRequest(
        url=f"upload://{file.filename or 'tile'}",
        raw_buffer=data,
        up_axis=up_axis.upper(),
    )
    return await _decode(tile_request)


@router.delete("/requests", response_model=AbortResponse)
async def abort_request(url: str = Query(..., min_length=1)):
    """Abort the in-flight request for ``url``, if any."""
    aborted = await pool_manager.abort(url)
    return AbortResponse(url=url, aborted=aborted)
