# app/web/static_route.py
from pathlib import Path

from fastapi import APIRouter
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse

from app.core.logger import get_logger

logger = get_logger("StaticRouter")


def build_static_router(dist_dir: str | Path) -> APIRouter:
    """
    Serve the compiled single-page UI.

    Unknown paths fall back to index.html so client-side routing works.
    Must be included after every other router, it matches any GET path.
    """
    root = Path(dist_dir).resolve()
    static_router = APIRouter(tags=["Static"])

    def resolve(url_path: str) -> Path | None:
        candidate = (root / url_path.lstrip("/")).resolve()
        if candidate != root and root not in candidate.parents:
            logger.warning(f"Refusing path outside static root: {url_path}")
            return None
        return candidate if candidate.is_file() else None

    @static_router.get("/{full_path:path}", include_in_schema=False)
    async def serve_static(full_path: str):
        if full_path == "api" or full_path.startswith("api/"):
            return JSONResponse(status_code=404, content={"error": "API endpoint not found"})

        target = resolve(full_path) if full_path else None
        if target is not None:
            return FileResponse(target)

        index = root / "index.html"
        if index.is_file():
            return FileResponse(index, media_type="text/html")
        return PlainTextResponse("404 Not Found", status_code=404)

    return static_router
