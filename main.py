"""
Ledgerlink - FastAPI Backend

Reconciliation matching engine for bank ledger, payment gateway and invoice
records.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Point the engine at the records service (optional, in-memory otherwise):
   export LEDGERLINK_STORE_URL=https://records.internal/api

3. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

4. Dry-run a reconciliation:
   curl -X POST http://localhost:8000/v1/reconciliation/runs \
     -H "Content-Type: application/json" \
     -d '{"dry_run": true, "date_from": "2025-03-01", "date_to": "2025-03-31"}'
"""
import time

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ledgerlink.api import reconciliation_router
from ledgerlink.di.container import container
from ledgerlink.services.errors import LedgerlinkError, to_http_exception
from ledgerlink.services.logging import log_error, log_request

app = FastAPI(
    title="Ledgerlink API",
    description="""
    Ledgerlink API v1 - Reconciliation Matching Engine

    Links bank ledger entries, payment gateway transactions and payouts, and
    invoices that describe the same economic event.

    ## Matching
    - Exact reference, amount + date window, fuzzy identity
    - Settlement batch aggregation against bank deposits
    - Pair (subset-sum) fallback

    ## Runs
    Runs can be dry (report only) or live (write links back to the records
    service). Every run is recorded in run history.
    """,
    version="1.0.0",
)

app.include_router(reconciliation_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
        except Exception as e:
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise

        log_request(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=(time.time() - start_time) * 1000,
            client_id=client_id,
        )
        return response


app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(LedgerlinkError)
async def ledgerlink_exception_handler(request: Request, exc: LedgerlinkError):
    """Handle all LedgerlinkErrors with structured responses."""
    http_exc = to_http_exception(exc)
    log_error(exc.code.value, str(exc), {"path": request.url.path, **exc.context})
    return JSONResponse(status_code=http_exc.status_code, content=exc.to_dict())


@app.on_event("shutdown")
async def close_store():
    """Release the records service connections."""
    await container.aclose()


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "ledgerlink"}
