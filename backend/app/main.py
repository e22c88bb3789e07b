import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings, require_jwt_secret
from app.core.database import ConcurrentModificationError
from app.routes.admin_credits import router as admin_credits_router
from app.routes.api_tokens import router as api_tokens_router
from app.routes.billing import router as billing_router
from app.routes.stripe_billing import router as stripe_billing_router
from app.routes.generation import router as generation_router
from app.services.credits import LedgerIntegrityError

logger = logging.getLogger(__name__)

require_jwt_secret()

app = FastAPI(title="ThinkTest AI Credits")
logger.info(
    "Startup config: ENV=%s stripe_configured=%s ledger_max_retries=%s",
    settings.ENV,
    bool(settings.STRIPE_SECRET_KEY),
    settings.LEDGER_MAX_RETRIES,
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    402: "PAYMENT_REQUIRED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
    message: str
    details: dict | None = None

    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        msg = detail.get("message")
        message = msg if isinstance(msg, str) and msg else "Request failed"
        det = detail.get("details")
        details = det if isinstance(det, dict) else None
    else:
        message = str(detail) if detail is not None else "Request failed"

    payload: dict = {"error": _error_code(exc.status_code), "message": message}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    )


@app.exception_handler(ConcurrentModificationError)
def concurrent_modification_handler(request: Request, exc: ConcurrentModificationError):  # noqa: ARG001
    logger.error("ledger.conflict_exhausted", extra={"label": exc.label, "attempts": exc.attempts})
    return JSONResponse(
        status_code=409,
        content={"error": "CONFLICT", "message": "The account was busy. Please retry."},
    )


@app.exception_handler(LedgerIntegrityError)
def ledger_integrity_handler(request: Request, exc: LedgerIntegrityError):  # noqa: ARG001
    logger.error("ledger.integrity_violation", extra={"error": str(exc)})
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "message": "Request failed"},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)
app.include_router(stripe_billing_router)
app.include_router(admin_credits_router)
app.include_router(generation_router)
app.include_router(api_tokens_router)

@app.get("/health")
def health_check():
    return {"status": "ok"}
