"""HTTP routes for the billing core.

The upstream auth layer authenticates callers and forwards the user id in
the ``X-User-Id`` header. The automation runner and signed document links
carry their own credentials instead.
"""
from __future__ import annotations

import functools
import logging
import mimetypes
from typing import Any, Awaitable, Callable
from urllib.parse import quote

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from rechnung.backends.automations import (
    deactivate_automation_impl,
    get_automation,
    run_due_automations_impl,
    save_automation_impl,
)
from rechnung.backends.cancellation import cancel_invoice_impl
from rechnung.backends.einvoice import export_einvoice_impl
from rechnung.backends.errors import BillingError, Unauthorized, ValidationFailed
from rechnung.backends.generation import (
    generate_invoice_impl,
    preview_next_invoice_number,
    set_invoice_status_impl,
)
from rechnung.backends.storage import get_document, verify_document_signature

_LOGGER = logging.getLogger("rechnung.api.routes")

USER_HEADER = "x-user-id"

Handler = Callable[[Request], Awaitable[Response]]


def _error_response(exc: BillingError) -> JSONResponse:
    return JSONResponse(exc.to_payload(), status_code=exc.status)


def _guarded(handler: Handler) -> Handler:
    """Translate billing errors into ``{message, reason}`` responses."""

    @functools.wraps(handler)
    async def wrapper(request: Request) -> Response:
        try:
            return await handler(request)
        except BillingError as exc:
            level = logging.ERROR if exc.status >= 500 else logging.INFO
            _LOGGER.log(
                level,
                "route.failed",
                extra={"path": request.url.path, "reason": exc.reason, "status": exc.status},
            )
            return _error_response(exc)
        except Exception:
            _LOGGER.exception("route.crashed", extra={"path": request.url.path})
            return JSONResponse(
                {"message": "Interner Fehler", "reason": "internal_error"},
                status_code=500,
            )

    return wrapper


def _user_id(request: Request) -> str:
    user_id = (request.headers.get(USER_HEADER) or "").strip()
    if not user_id:
        raise Unauthorized("Nicht eingeloggt", reason="not_authenticated")
    return user_id


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationFailed("Request body is not valid JSON", reason="invalid_json") from exc
    if not isinstance(body, dict):
        raise ValidationFailed("Request body must be a JSON object", reason="invalid_json")
    return body


def _invoice_number(source: dict[str, Any]) -> str:
    value = source.get("invoiceNumber") or source.get("invoice_number") or ""
    value = str(value).strip()
    if not value:
        raise ValidationFailed("invoiceNumber fehlt", reason="missing_invoice_number")
    return value


def _bearer_token(request: Request) -> str | None:
    token = request.query_params.get("token")
    if token:
        return token
    header = request.headers.get("authorization") or ""
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


@_guarded
async def cancel_invoice(request: Request) -> Response:
    user_id = _user_id(request)
    body = await _json_body(request)
    invoice_number = _invoice_number(body)
    reason = body.get("reason")
    result = await run_in_threadpool(cancel_invoice_impl, user_id, invoice_number, reason)
    return JSONResponse(result)


@_guarded
async def automation_runner(request: Request) -> Response:
    result = await run_in_threadpool(run_due_automations_impl, _bearer_token(request))
    return JSONResponse(result)


@_guarded
async def export_e_invoice(request: Request) -> Response:
    user_id = _user_id(request)
    body = await _json_body(request)
    invoice_number = body.get("invoiceNumber") or body.get("invoice_number")
    allowance_mode = body.pop("allowanceMode", None) or "price"
    if allowance_mode not in ("price", "document"):
        raise ValidationFailed(
            "allowanceMode must be 'price' or 'document'", reason="invalid_allowance_mode"
        )
    result = await run_in_threadpool(
        export_einvoice_impl, user_id, invoice_number, body, allowance_mode
    )
    return JSONResponse(result)


@_guarded
async def generate_invoice(request: Request) -> Response:
    user_id = _user_id(request)
    body = await _json_body(request)
    result = await run_in_threadpool(generate_invoice_impl, user_id, body)
    headers = {}
    if result.get("invoiceNumber"):
        headers["X-Invoice-Number"] = quote(result["invoiceNumber"], safe="")
    return JSONResponse(result, headers=headers)


@_guarded
async def invoice_status(request: Request) -> Response:
    user_id = _user_id(request)
    body = await _json_body(request)
    invoice_number = _invoice_number(body)
    result = await run_in_threadpool(
        set_invoice_status_impl, user_id, invoice_number, body.get("status")
    )
    return JSONResponse(result)


@_guarded
async def next_invoice_number(request: Request) -> Response:
    user_id = _user_id(request)
    return JSONResponse(await run_in_threadpool(preview_next_invoice_number, user_id))


@_guarded
async def automation(request: Request) -> Response:
    user_id = _user_id(request)

    if request.method == "GET":
        invoice_number = _invoice_number(dict(request.query_params))
        return JSONResponse(await run_in_threadpool(get_automation, user_id, invoice_number))

    if request.method == "DELETE":
        source = dict(request.query_params)
        if "invoiceNumber" not in source:
            source = await _json_body(request)
        invoice_number = _invoice_number(source)
        return JSONResponse(
            await run_in_threadpool(deactivate_automation_impl, user_id, invoice_number)
        )

    body = await _json_body(request)
    invoice_number = _invoice_number(body)
    result = await run_in_threadpool(
        functools.partial(
            save_automation_impl,
            user_id,
            invoice_number,
            start_date=body.get("startDate"),
            end_date=body.get("endDate"),
            interval=body.get("interval"),
            unlimited=bool(body.get("unlimited")),
            label=body.get("label"),
        )
    )
    return JSONResponse(result)


@_guarded
async def download_document(request: Request) -> Response:
    bucket = request.path_params["bucket"]
    path = request.path_params["path"]
    expires = request.query_params.get("expires", "")
    signature = request.query_params.get("signature", "")
    if not verify_document_signature(bucket, path, expires, signature):
        return JSONResponse(
            {"message": "Link ungültig oder abgelaufen", "reason": "invalid_signature"},
            status_code=403,
        )
    try:
        data = get_document(bucket, path)
    except ValueError:
        return JSONResponse(
            {"message": "Ungültiger Pfad", "reason": "invalid_path"}, status_code=400
        )
    except FileNotFoundError:
        return JSONResponse(
            {"message": "Dokument nicht gefunden", "reason": "document_not_found"},
            status_code=404,
        )
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    filename = path.rsplit("/", 1)[-1]
    return Response(
        data,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "service": "rechnung"})


def make_routes() -> list[Route]:
    return [
        Route("/api/rechnung/cancel", cancel_invoice, methods=["POST"]),
        Route("/api/rechnung/automation-runner", automation_runner, methods=["GET", "POST"]),
        Route("/api/rechnung/e-invoice", export_e_invoice, methods=["POST"]),
        Route("/api/rechnung/generate-invoice", generate_invoice, methods=["POST"]),
        Route("/api/rechnung/status", invoice_status, methods=["POST"]),
        Route("/api/rechnung/next-invoice-number", next_invoice_number, methods=["GET"]),
        Route("/api/rechnung/automation", automation, methods=["GET", "POST", "DELETE"]),
        Route("/api/documents/{bucket}/{path:path}", download_document, methods=["GET"]),
        Route("/health", health, methods=["GET"]),
    ]


__all__ = ["USER_HEADER", "make_routes"]
