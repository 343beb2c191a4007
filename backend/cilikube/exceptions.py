from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from kubernetes.client.exceptions import ApiException
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application error carrying an HTTP status and a taxonomy kind."""

    status_code: int = 500
    code: str = "InternalError"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cluster_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = dict(details or {})
        if cluster_id:
            self.details.setdefault("cluster_id", cluster_id)

    @property
    def cluster_id(self) -> Optional[str]:
        return self.details.get("cluster_id")


class ValidationError(AppException):
    status_code = 400
    code = "ValidationError"


class ClusterSelectionMissing(AppException):
    status_code = 400
    code = "ClusterSelectionMissing"


class ClusterNotFound(AppException):
    status_code = 404
    code = "ClusterNotFound"


class NoActiveCluster(AppException):
    status_code = 404
    code = "NoActive"


class ClusterUnavailable(AppException):
    status_code = 503
    code = "ClusterUnavailable"


class ConfigInvalid(AppException):
    status_code = 500
    code = "ConfigInvalid"


class AuthFailed(AppException):
    status_code = 500
    code = "AuthFailed"


class Unreachable(AppException):
    status_code = 500
    code = "Unreachable"


class UpstreamNotFound(AppException):
    status_code = 404
    code = "UpstreamNotFound"


class Invalid(AppException):
    status_code = 400
    code = "Invalid"


class Conflict(AppException):
    status_code = 409
    code = "Conflict"


class Forbidden(AppException):
    status_code = 403
    code = "Forbidden"


class UpstreamError(AppException):
    status_code = 500
    code = "UpstreamError"


def _upstream_status(exc: ApiException) -> tuple[str, Optional[str]]:
    """Extract (message, reason) from a Kubernetes Status body when present."""
    message = exc.reason or "upstream error"
    reason: Optional[str] = None
    body = exc.body
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if body:
        try:
            status = json.loads(body)
        except ValueError:
            status = None
        if isinstance(status, dict):
            message = status.get("message") or message
            reason = status.get("reason")
    return message, reason


def classify_api_exception(exc: ApiException, cluster_id: Optional[str] = None) -> AppException:
    """Map a Kubernetes ApiException onto the application error taxonomy."""
    message, reason = _upstream_status(exc)
    details: Dict[str, Any] = {"upstream_status": exc.status}
    if reason:
        details["reason"] = reason

    status = exc.status or 0
    if status == 404:
        err_cls: type[AppException] = UpstreamNotFound
    elif status == 409:
        err_cls = Conflict
    elif status == 403:
        err_cls = Forbidden
    elif status == 401:
        err_cls = AuthFailed
    elif status in (400, 422):
        err_cls = Invalid
    else:
        err_cls = UpstreamError
    return err_cls(message, details=details, cluster_id=cluster_id)


def error_payload(exc: AppException) -> Dict[str, Any]:
    return {
        "code": exc.status_code,
        "message": exc.message,
        "details": {"kind": exc.code, **exc.details},
    }


def _build_error_payload(
    *,
    message: str,
    status_code: int,
    code: str,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "code": status_code,
        "message": message,
        "details": {"kind": code, **(details or {})},
    }


def _request_id_headers(request: Request) -> Dict[str, str]:
    req_id = getattr(request.state, "request_id", None)
    return {"X-Request-ID": req_id} if req_id else {}


def register_exception_handlers(app: FastAPI) -> None:
    """Register global handlers producing the error envelope."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        message = exc.detail if isinstance(exc.detail, str) else "request failed"
        payload = _build_error_payload(message=message, status_code=exc.status_code, code="HTTPError")
        logger.warning("HTTPException: status=%s path=%s", exc.status_code, request.url.path)
        return JSONResponse(status_code=exc.status_code, content=payload, headers=_request_id_headers(request))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        payload = _build_error_payload(
            message="request validation failed",
            status_code=400,
            code=ValidationError.code,
            details={"errors": errors},
        )
        logger.info("ValidationError: path=%s errors=%d", request.url.path, len(errors))
        return JSONResponse(status_code=400, content=payload, headers=_request_id_headers(request))

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):  # type: ignore[override]
        logger.warning(
            "AppException: status=%s code=%s path=%s cluster_id=%s",
            exc.status_code,
            exc.code,
            request.url.path,
            exc.cluster_id,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(exc),
            headers=_request_id_headers(request),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logger.exception("UnhandledException: path=%s", request.url.path)
        payload = _build_error_payload(message="internal server error", status_code=500, code="InternalError")
        return JSONResponse(status_code=500, content=payload, headers=_request_id_headers(request))
