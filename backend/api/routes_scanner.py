from typing import Any, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services.scan_orchestrator import ScanOrchestrator
from utils.logger import api_logger as logger

router = APIRouter()


class ScanRunRequest(BaseModel):
    # Untyped so malformed values reach the orchestrator's 400 path instead of a 422.
    scanType: Any = None
    userId: Any = None
    userTier: Any = "free"


def get_scan_orchestrator() -> ScanOrchestrator:
    """A fresh orchestrator per request; nothing is shared between scans."""
    return ScanOrchestrator()


@router.post("/scanner/run")
async def run_scan(
    request: Optional[ScanRunRequest] = None,
    orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator),
):
    """Run the selected scanners and return the normalized opportunities."""
    request = request or ScanRunRequest()
    try:
        outcome = await orchestrator.run(request.scanType, user_id=request.userId, user_tier=request.userTier)
    except Exception as exc:
        logger.error("Scan request failed", scan_type=request.scanType, error=str(exc), exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "details": str(exc)})
    finally:
        await orchestrator.close()
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
