"""FastAPI app exposing source discovery and preference for web clients."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional
import logging
import os

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel

from ..core.resolver import MissingParameters, NotFound
from ..core.variants import generate_search_variants
from ..models.candidate import ResolutionRequest
from .runtime import VodscoutRuntime, build_runtime

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _to_source_health(consecutive_failures: int, circuit_open: bool) -> str:
    if circuit_open:
        return "offline"
    if consecutive_failures >= 2:
        return "degraded"
    return "healthy"


def _truthy(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


class SourceToggleRequest(BaseModel):
    enabled: bool


def create_app(runtime: Optional[VodscoutRuntime] = None) -> FastAPI:
    runtime = runtime or build_runtime()

    app = FastAPI(title="vodscout API", version="0.1.0")

    @app.get("/health")
    def health() -> Dict:
        return {"ok": True, "time": _utc_now_iso()}

    @app.get("/api/variants")
    def variants(q: str = Query(default="")) -> Dict:
        query = (q or "").strip()
        if not query:
            raise HTTPException(status_code=400, detail="Query parameter 'q' is required.")
        return {"query": query, "variants": generate_search_variants(query)}

    @app.get("/api/resolve")
    def resolve(
        request: Request,
        title: Optional[str] = None,
        year: Optional[str] = None,
        type: Optional[str] = None,
        source: Optional[str] = None,
        id: Optional[str] = None,
        prefer: Optional[str] = None,
        touch: int = 0,
        ua: Optional[str] = None,
    ) -> Dict:
        user_agent = ua if ua is not None else str(request.headers.get("user-agent") or "")
        try:
            resolution_request = ResolutionRequest(
                title=title,
                year=year,
                type=type,
                known_source=source,
                known_id=id,
                prefer_best=_truthy(prefer),
                user_agent=user_agent,
                touch_points=touch,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

        try:
            result = runtime.resolver.resolve(resolution_request)
        except MissingParameters as e:
            raise HTTPException(status_code=400, detail=str(e))
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        return result.to_dict()

    @app.get("/api/sources")
    def sources() -> Dict:
        health = runtime.catalog.get_source_health_snapshot()
        payload = []
        for key in runtime.catalog.get_source_keys():
            source_health = health.get(key, {})
            payload.append(
                {
                    "key": key,
                    "name": source_health.get("name", key),
                    "enabled": bool(source_health.get("enabled", False)),
                    "health": _to_source_health(
                        int(source_health.get("consecutive_failures", 0)),
                        bool(source_health.get("circuit_open", False)),
                    ),
                    "sourceHealth": source_health,
                }
            )
        return {"sources": payload}

    @app.post("/api/sources/{source_key}/toggle")
    def toggle_source(source_key: str, body: SourceToggleRequest) -> Dict:
        if source_key not in runtime.catalog.get_source_keys():
            raise HTTPException(status_code=404, detail="Source not found.")
        runtime.catalog.enable_source(source_key, body.enabled)
        logger.info("Source %s %s", source_key, "enabled" if body.enabled else "disabled")
        return {"ok": True, "key": source_key, "enabled": body.enabled}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    host = os.environ.get("VODSCOUT_HOST", "127.0.0.1")
    port = int(os.environ.get("VODSCOUT_PORT", "8000"))
    uvicorn.run("vodscout.web.app:app", host=host, port=port, reload=False)
