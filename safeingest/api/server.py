from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Response, UploadFile
from fastapi.responses import JSONResponse
from starlette.requests import Request

from safeingest.api.auth import (
    CAP_DELETE,
    CAP_READ,
    CAP_WRITE,
    Actor,
    load_auth_config,
    missing_capability,
    requires_auth,
    resolve_actor,
)
from safeingest.api.middleware import AccessLogMiddleware, RequestIdMiddleware
from safeingest.api.models import FileRecordOut
from safeingest.core.config import IngestConfig, configure_logging
from safeingest.core.errors import (
    DecodeError,
    IngestError,
    MissingPayloadError,
    PolicyConfigurationError,
    PolicyViolationError,
    RecordNotFoundError,
    SizeViolation,
    SpoofedTypeError,
    StorageFailure,
    StructuralValidationError,
    UnsupportedSourceError,
    VariantError,
)
from safeingest.core.pipeline import IngestPipeline
from safeingest.core.storage.uri import InvalidPathError, Uri

log = logging.getLogger("safeingest.api")

_STATUS = (
    (SizeViolation, 413),
    (SpoofedTypeError, 415),
    (StructuralValidationError, 422),
    (DecodeError, 422),
    (PolicyViolationError, 422),
    (VariantError, 422),
    (UnsupportedSourceError, 400),
    (MissingPayloadError, 400),
    (RecordNotFoundError, 404),
    (StorageFailure, 503),
)


def status_for(exc: IngestError) -> int:
    """HTTP status for a rejection. Unknown policy names map to 404."""

    if isinstance(exc, PolicyConfigurationError):
        return 404 if exc.rule == "catalog" else 400
    for cls, status in _STATUS:
        if isinstance(exc, cls):
            return status
    return 400


def record_id_from_ref(ref: str) -> str:
    """Accept "local://images/ab/x.png" or its URL form "local/images/ab/x.png".

    Security notes:
    - The value is parsed as a Uri, so traversal and absolute paths are refused.

    """

    value = ref if "://" in ref else ref.replace("/", "://", 1)
    try:
        return str(Uri.from_string(value))
    except InvalidPathError:
        raise HTTPException(status_code=404, detail="record_not_found")


def create_app(*, config: Optional[IngestConfig] = None, pipeline: Optional[IngestPipeline] = None) -> FastAPI:
    """Create the FastAPI app around one IngestPipeline."""

    cfg = config or IngestConfig.from_env()
    mapping = load_auth_config()
    must_auth = requires_auth(mapping)

    configure_logging(cfg.log_level)

    app = FastAPI(title="safeingest API", version="0.1")
    app.state.cfg = cfg
    app.state.must_auth = must_auth
    app.state.pipeline = pipeline or IngestPipeline.from_config(cfg)

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(AccessLogMiddleware)

    @app.exception_handler(IngestError)
    async def ingest_error_handler(request: Request, exc: IngestError) -> JSONResponse:
        body = exc.to_dict()
        body.pop("rule", None)
        return JSONResponse(status_code=status_for(exc), content=body)

    def get_actor(
        request: Request,
        x_safeingest_api_key: Optional[str] = Header(default=None),
    ) -> Actor:
        """Authenticate the request; fail closed (401) when a key is required."""

        actor = resolve_actor(x_safeingest_api_key, mapping, must_auth=must_auth)
        if actor is None:
            raise HTTPException(status_code=401, detail="unauthorized")
        request.state.actor_id = actor.actor_id
        return actor

    def _require_cap(actor: Actor, cap: str) -> None:
        if missing_capability(actor, cap) is not None:
            raise HTTPException(status_code=403, detail="forbidden")

    def _pipeline() -> IngestPipeline:
        return app.state.pipeline

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "auth_required": must_auth,
            "policies": _pipeline().catalog.names(),
            "db": str(cfg.db_path) if cfg.db_path else None,
        }

    @app.post("/files/{policy_name}", response_model=FileRecordOut, status_code=201)
    def upload_endpoint(
        policy_name: str,
        actor: Actor = Depends(get_actor),
        file: UploadFile = File(...),
    ) -> FileRecordOut:
        """Ingest one upload under a named policy.

        Requires capability: files:write

        Security notes:
        - Policy options cannot be overridden by the client.
        - The client filename only becomes the record's display name.

        """

        _require_cap(actor, CAP_WRITE)
        record = _pipeline().ingest(file, policy_name)
        return FileRecordOut.from_record(record)

    @app.get("/files", response_model=List[FileRecordOut])
    def list_endpoint(
        response: Response,
        actor: Actor = Depends(get_actor),
        limit: int = 50,
        offset: int = 0,
        namespace: Optional[str] = None,
    ) -> List[FileRecordOut]:
        """List stored records (paged). Requires capability: files:read"""

        _require_cap(actor, CAP_READ)
        lim = max(1, min(500, int(limit)))
        off = max(0, int(offset))
        records = _pipeline().list_records(limit=lim, offset=off, namespace=namespace)

        has_more = len(records) == lim
        response.headers["X-Has-More"] = "true" if has_more else "false"
        if has_more:
            response.headers["X-Next-Offset"] = str(off + lim)
        return [FileRecordOut.from_record(r) for r in records]

    @app.post("/files/{record_ref:path}/variants", response_model=FileRecordOut)
    def regenerate_endpoint(record_ref: str, actor: Actor = Depends(get_actor)) -> FileRecordOut:
        """Re-derive variants of a stored record. Requires capability: files:write"""

        _require_cap(actor, CAP_WRITE)
        record = _pipeline().regenerate_variants(record_id_from_ref(record_ref))
        return FileRecordOut.from_record(record)

    @app.get("/files/{record_ref:path}", response_model=FileRecordOut)
    def get_endpoint(record_ref: str, actor: Actor = Depends(get_actor)) -> FileRecordOut:
        """Fetch one record. Requires capability: files:read"""

        _require_cap(actor, CAP_READ)
        return FileRecordOut.from_record(_pipeline().get(record_id_from_ref(record_ref)))

    @app.delete("/files/{record_ref:path}", status_code=204)
    def delete_endpoint(record_ref: str, actor: Actor = Depends(get_actor)) -> Response:
        """Remove a record and its bytes. Requires capability: files:delete"""

        _require_cap(actor, CAP_DELETE)
        _pipeline().remove(record_id_from_ref(record_ref))
        return Response(status_code=204)

    return app


def app_from_env() -> FastAPI:
    """Factory used by Uvicorn entrypoints (`uvicorn safeingest.api.server:app_from_env --factory`)."""

    return create_app(config=IngestConfig.from_env())
