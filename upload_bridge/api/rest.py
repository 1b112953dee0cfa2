"""
Upload Bridge HTTP API

A single route: POST / with a multipart/form-data body.

Request lifecycle:
1. Resolve the client IP (trusted source for the announcement, untrusted
   one for logs)
2. Handshake: announce the IP to the front-end and wait for its
   acknowledgment
3. Stream the multipart body into the downloads directory, one field at a
   time

While step 2 waits, the body reader watches for the client hanging up and
cancels the handshake if it does.

Status codes:
- 200: all files saved (or no files sent)
- 400: a field lacks filename/content type, a bad filename, or a
  malformed multipart body
- 413: body larger than the configured ceiling
- 499: the client disconnected (nobody reads this)
- 500: trusted client IP missing, or a file could not be written
- 503: the front-end channel was closed
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from .body import RequestBody
from .client_ip import client_identity, insecure_ip
from .middleware import BodySizeLimitMiddleware, RequestTracingMiddleware, get_request_id
from ..channel import ChannelRegistry
from ..config import Config
from ..errors import ChannelClosed, ClientDisconnected, ClientIpRejected, UploadError
from ..transfer import UploadIngestor, handshake

logger = logging.getLogger(__name__)


# === Pydantic Models ===

class SavedFileInfo(BaseModel):
    """A file written by an upload."""
    filename: str
    content_type: str
    size: int
    path: str


class UploadResponse(BaseModel):
    """Result of an upload request."""
    success: bool
    client_ip: str
    files: List[SavedFileInfo]


# === API Creation ===

def create_app(registry: ChannelRegistry, config: Optional[Config] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        registry: Initialized channel registry shared by every request
        config: Bridge configuration (uses defaults if not provided)

    Returns:
        FastAPI application
    """
    config = config or Config()
    config.validate()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info(f"Upload bridge saving to {config.downloads_dir}")
        yield
        logger.info("Upload bridge stopping...")

    app = FastAPI(
        title="Upload Bridge",
        description="Local upload endpoint gated by a front-end handshake",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.registry = registry
    app.state.client_ip_source = config.client_ip_source
    app.state.ingestor = UploadIngestor(
        downloads_dir=config.downloads_dir,
        chunk_size=config.chunk_size,
    )

    # Last added runs first: tracing wraps the size limit
    app.add_middleware(BodySizeLimitMiddleware, max_body_size=config.max_upload_bytes)
    app.add_middleware(RequestTracingMiddleware)

    # === Endpoints ===

    @app.post("/", response_model=UploadResponse, tags=["Upload"])
    async def accept_form(request: Request):
        """Announce the caller, wait for the front-end, then save the files."""
        request_id = get_request_id()

        try:
            identity = client_identity(request)
        except ClientIpRejected as e:
            logger.error(f"[{request_id}] {e} (untrusted address: {insecure_ip(request)})")
            raise HTTPException(status_code=500, detail=str(e))

        logger.debug(f"[{request_id}] Upload from {identity.secure} (untrusted: {identity.insecure})")

        body = RequestBody(request.receive)
        try:
            try:
                result = await body.wait_for(
                    handshake(request.app.state.registry, identity.secure)
                )
            except ChannelClosed:
                logger.error(
                    f"[{request_id}] Front-end channel closed during handshake with {identity.secure}"
                )
                raise HTTPException(status_code=503, detail="Front-end is not available")
            except ClientDisconnected as e:
                logger.warning(f"[{request_id}] {identity.secure}: {e}")
                raise HTTPException(status_code=e.status_code, detail=str(e))

            logger.info(
                f"[{request_id}] Front-end acknowledged {identity.secure} "
                f"({result.acknowledgment!r}) after {result.waited:.2f}s"
            )

            ingestor: UploadIngestor = request.app.state.ingestor
            try:
                saved = await ingestor.ingest(request.headers.get("content-type"), body.stream())
            except UploadError as e:
                if e.status_code >= 500 and not isinstance(e, ClientDisconnected):
                    logger.error(f"[{request_id}] Upload from {identity.secure} failed: {e}", exc_info=True)
                else:
                    logger.warning(f"[{request_id}] Upload from {identity.secure} rejected: {e}")
                raise HTTPException(status_code=e.status_code, detail=str(e))
        finally:
            await body.close()

        return UploadResponse(
            success=True,
            client_ip=identity.secure,
            files=[SavedFileInfo(**f.to_dict()) for f in saved],
        )

    return app
