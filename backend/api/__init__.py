from api.routes_opportunities import router as opportunities_router
from api.routes_platforms import router as platforms_router
from api.routes_scanner import router as scanner_router

__all__ = ["opportunities_router", "platforms_router", "scanner_router"]
