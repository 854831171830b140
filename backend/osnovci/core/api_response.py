from collections.abc import Callable

from fastapi import Request
from fastapi.responses import JSONResponse

from osnovci.core.paging import Page


def get_request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "-"


def iso_or_none(value) -> str | None:
    return value.isoformat() if value is not None else None


def success_response_payload(request: Request, *, data, meta: dict | None = None) -> dict:
    return {"success": True, "data": data, "meta": meta or {}, "request_id": get_request_id(request)}


def paged_response_payload(request: Request, page: Page, serializer: Callable, *, extra_meta: dict | None = None) -> dict:
    meta = page.meta()
    if extra_meta:
        meta.update(extra_meta)
    return success_response_payload(request, data=page.serialize(serializer), meta=meta)


def error_response_payload(request: Request, *, code: str, message: str, details=None) -> dict:
    return {
        "success": False,
        "error": {"code": code, "message": message, "details": details},
        "request_id": get_request_id(request),
    }


def error_json_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details=None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Error envelope as a response; the request id is echoed in the body."""
    return JSONResponse(
        status_code=status_code,
        content=error_response_payload(request, code=code, message=message, details=details),
        headers=headers,
    )
