"""FastAPI server for Quorum."""
from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import base64
import binascii
import logging

from quorum.categories import CategoryClassifier, CategoryTable, load_table
from quorum.config import get_config
from quorum.consensus import ConsensusSettings
from quorum.errors import ConfigurationError, InputValidationError
from quorum.health import health_payload
from quorum.pipeline import ValuationPipeline
from quorum.providers.registry import ProviderRegistry
from quorum.store import ValuationStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Quorum")


@app.on_event("startup")
def _startup() -> None:
    config = get_config()
    table = CategoryTable.load(config.category_table_path) if config.category_table_path else load_table()
    app.state.config = config
    app.state.store = ValuationStore(config.data_dir)
    app.state.classifier = CategoryClassifier(table)
    app.state.settings = ConsensusSettings.from_config(config.consensus)
    try:
        app.state.pipeline = ValuationPipeline.from_config(config)
        app.state.registry = app.state.pipeline.registry
        app.state.startup_error = None
    except ConfigurationError as exc:
        logger.error(f"Valuation disabled: {exc}")
        app.state.pipeline = None
        app.state.registry = ProviderRegistry.load(config.providers)
        app.state.startup_error = str(exc)


@app.on_event("shutdown")
def _shutdown() -> None:
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        pipeline.close()


@app.get("/health")
async def health(request: Request):
    """Health check endpoint for monitoring."""
    payload = health_payload(request.app.state.registry, request.app.state.settings)
    payload["service"] = "quorum"
    payload["status"] = "healthy" if payload["ok"] else "degraded"
    if getattr(request.app.state, "startup_error", None):
        payload["error"] = request.app.state.startup_error
    return payload


@app.get("/api/providers")
async def providers_api(request: Request):
    return {"statuses": [s.to_dict() for s in request.app.state.registry.statuses()]}


@app.post("/api/classify")
async def classify_api(payload: dict, request: Request):
    name = (payload.get("item_name") or payload.get("name") or "").strip()
    if not name:
        return JSONResponse({"error": "item_name required"}, status_code=400)
    classifier = request.app.state.classifier
    detection = classifier.classify(name, hint=payload.get("hint"), ai_vote=payload.get("ai_vote"))
    return {
        **detection.to_dict(),
        "authority_sources": list(classifier.table.authority_sources(detection.category)),
    }


def _decode_images(raw: list) -> list[bytes]:
    images = []
    for index, item in enumerate(raw):
        if not isinstance(item, str):
            raise InputValidationError(f"Image {index} must be a base64 string")
        if item.startswith("data:") and "," in item:
            item = item.split(",", 1)[1]
        try:
            images.append(base64.b64decode(item, validate=True))
        except (binascii.Error, ValueError):
            raise InputValidationError(f"Image {index} is not valid base64")
    return images


@app.post("/api/valuate")
async def valuate_api(payload: dict, request: Request):
    pipeline = request.app.state.pipeline
    if pipeline is None:
        return JSONResponse({"error": request.app.state.startup_error or "no providers"}, status_code=503)
    raw_images = payload.get("images") or []
    if not isinstance(raw_images, list):
        return JSONResponse({"error": "images must be a list"}, status_code=400)
    try:
        images = _decode_images(raw_images)
        report = await pipeline.avaluate_detailed(
            images,
            payload.get("item_hint"),
            payload.get("category_hint"),
        )
    except InputValidationError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    return report.to_dict()


@app.get("/api/runs")
async def runs_api(request: Request, limit: int = 20):
    return {"runs": request.app.state.store.list_runs(limit=limit)}


@app.get("/api/runs/latest")
async def runs_latest_api(request: Request):
    return request.app.state.store.latest() or {}


@app.get("/api/runs/{run_id}")
async def run_detail_api(run_id: str, request: Request):
    run = request.app.state.store.get_run(run_id)
    if not run:
        return JSONResponse({"error": "not found"}, status_code=404)
    return run


def main(host: str | None = None, port: int | None = None):
    import uvicorn
    config = get_config()
    host = host or config.host
    port = int(port or config.port)
    uvicorn.run("quorum.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
