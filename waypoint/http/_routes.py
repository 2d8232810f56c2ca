"""
HTTP surface of the return request.

The cached status and body are sent as they are; the token is echoed in the
Idempotency-Key header so a client that did not send one can retry with it.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from kungfu import Ok, Error

from waypoint.idempotency import IdempotencyError, IdempotencyErrorKind
from waypoint.returns import (
    InvalidData,
    InvalidState,
    NotFound,
    RequestReturnBody,
    ReturnRequests,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Returns"])

IDEMPOTENCY_HEADER = "Idempotency-Key"


def get_return_requests(request: Request) -> ReturnRequests:
    return request.app.state.return_requests


def key_headers(token: str) -> dict[str, str]:
    return {
        IDEMPOTENCY_HEADER: token,
        "Access-Control-Expose-Headers": IDEMPOTENCY_HEADER,
    }


def status_for(err: IdempotencyError) -> int:
    match err.kind:
        case (
            IdempotencyErrorKind.LOCKED
            | IdempotencyErrorKind.CONFLICT
            | IdempotencyErrorKind.MISMATCHED_REQUEST
        ):
            return 409
        case IdempotencyErrorKind.NOT_FOUND:
            return 404
        case IdempotencyErrorKind.STORE_ERROR:
            return 503
        case IdempotencyErrorKind.STAGE_FAILURE:
            match err.original_error:
                case NotFound():
                    return 404
                case InvalidData():
                    return 400
                case InvalidState():
                    return 409
                case _:
                    return 500
        case _:
            return 500


def error_response(err: IdempotencyError, headers: dict[str, str] | None = None) -> JSONResponse:
    status = status_for(err)
    if status >= 500:
        logger.error("Return request failed: %s", err.message, exc_info=err.original_error)
    return JSONResponse(
        status_code=status,
        content={"type": err.kind.name.lower(), "message": err.message},
        headers=headers,
    )


@router.post(
    "/orders/{order_id}/returns",
    responses={
        200: {"description": "Order with the requested return"},
        400: {"description": "Invalid return items"},
        404: {"description": "Order or return not found"},
        409: {"description": "Idempotency key conflict, mismatch or in progress"},
        503: {"description": "Idempotency store unavailable"},
    },
)
async def request_return(
    order_id: str,
    body: RequestReturnBody,
    requests: Annotated[ReturnRequests, Depends(get_return_requests)],
    idempotency_key: Annotated[str, Header(alias=IDEMPOTENCY_HEADER)] = "",
) -> Response:
    """Request a return for an order; safe to retry under the same Idempotency-Key."""
    initialized = await requests.initialize(idempotency_key, order_id)
    match initialized:
        case Error(err) if err.kind in (
            IdempotencyErrorKind.CONFLICT,
            IdempotencyErrorKind.MISMATCHED_REQUEST,
        ):
            return PlainTextResponse("Failed to create idempotency key", status_code=409)
        case Error(err):
            return error_response(err)
        case Ok(key):
            pass

    headers = key_headers(key.token)
    result = await requests.run(key, order_id, body)
    match result:
        case Ok(done):
            return JSONResponse(
                status_code=done.response_code,
                content=dict(done.response_body),
                headers=headers,
            )
        case Error(err):
            return error_response(err, headers)


__all__ = (
    "router",
    "IDEMPOTENCY_HEADER",
    "get_return_requests",
    "key_headers",
    "status_for",
    "error_response",
)
