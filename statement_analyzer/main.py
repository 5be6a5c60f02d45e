# statement_analyzer/main.py
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse

from . import config
from .errors import ConfigurationError, StagingError
from .llm import TextGenerationClient, make_client
from .pipeline import stream_statement_events
from .schema import AnalyzeRequest, to_ndjson
from .storage import BlobStore, LocalBlobStore, make_store

# Console logger
logger = logging.getLogger("statement-analyzer")
if not logger.handlers:
    logger.setLevel(logging.INFO)
    _h = logging.StreamHandler(sys.stdout)
    _h.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s"))
    logger.addHandler(_h)

PDF_TYPES = {"application/pdf", "application/x-pdf"}


def create_app(client: Optional[TextGenerationClient] = None, store: Optional[BlobStore] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if app.state.client is not None:
            await app.state.client.aclose()
        # only remote stores hold an HTTP client
        close_store = getattr(app.state.store, "aclose", None)
        if close_store is not None:
            await close_store()

    app = FastAPI(
        title="Bank Statement Analyzer",
        description="Upload a PDF bank statement and stream back its credit transactions, extracted chunk by chunk by an LLM.",
        version="2.0.0",
        lifespan=lifespan,
    )
    app.state.client = client
    app.state.store = store or make_store()

    def get_client() -> TextGenerationClient:
        # Built on first use so a missing API key fails the request, not startup
        if app.state.client is None:
            app.state.client = make_client()
        return app.state.client

    @app.get("/health")
    def health():
        return {"status": "ok", "backend": config.LLM_BACKEND}

    @app.post("/api/uploads", summary="Stage a PDF statement for analysis")
    async def upload_statement(file: UploadFile = File(..., description="PDF bank statement")):
        if (file.content_type or "").lower() not in PDF_TYPES:
            raise HTTPException(status_code=400, detail="Only PDF files are accepted.")
        content = await file.read(config.MAX_UPLOAD_BYTES + 1)
        if len(content) > config.MAX_UPLOAD_BYTES:
            raise HTTPException(
                status_code=413,
                detail=f"File is larger than {config.MAX_UPLOAD_BYTES // (1024 * 1024)}MB.",
            )
        try:
            url = await app.state.store.put(file.filename or "statement.pdf", content)
        except StagingError as e:
            logger.exception("Upload staging failed")
            raise HTTPException(status_code=400, detail=str(e))
        return {"url": url, "pathname": url.rsplit("/", 1)[-1], "size": len(content)}

    @app.get("/api/blobs/{name}", summary="Serve a locally staged upload")
    def get_blob(name: str):
        store = app.state.store
        if not isinstance(store, LocalBlobStore):
            raise HTTPException(status_code=404, detail="Not found")
        try:
            path = store.path_for(name)
        except StagingError:
            raise HTTPException(status_code=404, detail="Not found")
        if not os.path.isfile(path):
            raise HTTPException(status_code=404, detail="Not found")
        return FileResponse(path, media_type="application/pdf", filename=name)

    @app.post("/api/statement-analyser", summary="Analyze a staged PDF statement (NDJSON stream)")
    async def analyze(req: AnalyzeRequest):
        blob_url = req.blob_url
        if not blob_url:
            return JSONResponse({"error": "No file URL provided"}, status_code=400)

        try:
            client = get_client()
        except ConfigurationError as e:
            logger.error("Server configuration error: %s", e)
            try:
                await app.state.store.delete(blob_url)
            except Exception:
                logger.exception("Failed to delete staged blob %s", blob_url)
            return JSONResponse({"error": f"Server configuration error: {e}"}, status_code=500)

        async def body():
            async for event in stream_statement_events(blob_url, app.state.store, client):
                yield to_ndjson(event)

        return StreamingResponse(
            body(),
            media_type="application/x-ndjson",
            headers={
                "Cache-Control": "no-cache, no-transform",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app


app = create_app()
