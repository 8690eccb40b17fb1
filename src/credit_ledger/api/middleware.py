"""
FastAPI/Starlette middleware that charges credits for paid endpoints.

Flow:
  0. A request id the caller was already charged for gets 409 and the
     handler does not run again.
  1. Before the request: check the caller's balance covers the endpoint's
     cost and answer 402 right away if not, so no paid work (AI generation)
     starts for a user who cannot pay.
  2. The request is executed.
  3. After a successful (2xx) response: consume the cost. The consume
     re-checks the balance atomically; if a concurrent request spent the
     credits in the meantime, the client gets 402 instead of the result.
     Failed responses are never charged.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..exceptions import DuplicateTransaction, InsufficientCredits, TransientStoreFailure
from ..models.transaction import ConsumeOptions, TransactionScene
from ..services.credit_service import CreditService


logger = logging.getLogger(__name__)


def _insufficient(required: int, available: int) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={
            "detail": "Insufficient credits. Please purchase more credits.",
            "code": "INSUFFICIENT_CREDITS",
            "required": required,
            "available": available,
        },
    )


def _already_charged(request_id: Optional[str], transaction_id: Optional[str]) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "detail": "This request was already processed.",
            "code": "DUPLICATE_TRANSACTION",
            "request_id": request_id,
            "transaction_id": transaction_id,
        },
    )


class CreditConsumptionMiddleware(BaseHTTPMiddleware):
    """
    Middleware that gates paid endpoints on balance and consumes their fixed
    cost once they succeed.

    - `costs` maps a path (or path prefix) to the credits it costs.
    - `X-Request-Id`, when sent, is scoped to the caller and becomes the
      consume's `transaction_no`. A request id that was already charged is
      answered with 409 without running the handler again.
    - Adds `X-Credits-Consumed` and `X-Credits-Remaining` to charged responses.
    """

    def __init__(
        self,
        app: Any,
        credit_service: CreditService,
        *,
        costs: Mapping[str, int],
        scene: TransactionScene = TransactionScene.MEME_GENERATION,
        user_id_header: str = "X-User-Id",
        request_id_header: str = "X-Request-Id",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.credit_service = credit_service
        self.costs = {path.rstrip("/"): cost for path, cost in costs.items()}
        self.scene = scene
        self.user_id_header = user_id_header
        self.request_id_header = request_id_header
        self.skip_paths = tuple(skip_paths or ())

    def _cost_for(self, path: str) -> Optional[int]:
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return None
        for prefix, cost in self.costs.items():
            if path == prefix or path.startswith(prefix + "/"):
                return cost
        return None

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        cost = self._cost_for(request.url.path)
        if cost is None:
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": "Please sign in to use this feature."},
            )

        request_id = request.headers.get(self.request_id_header)
        transaction_no = f"{user_id}:{request_id}" if request_id else None
        if transaction_no is not None:
            charged = await self.credit_service.find_transaction(transaction_no)
            if charged is not None and charged.user_id == user_id:
                logger.info(
                    "Credit middleware: request %s already charged",
                    request_id,
                    extra={"path": request.url.path, "user_id": user_id},
                )
                return _already_charged(request_id, charged.id)

        available = await self.credit_service.remaining_balance(user_id)
        if available < cost:
            return _insufficient(cost, available)

        response = await call_next(request)
        if not 200 <= response.status_code < 300:
            return response

        try:
            result = await self.credit_service.consume(
                user_id=user_id,
                amount=cost,
                scene=self.scene,
                options=ConsumeOptions(
                    description=f"{request.method} {request.url.path}",
                    transaction_no=transaction_no,
                ),
                correlation_id=request_id,
            )
        except InsufficientCredits as exc:
            logger.warning(
                "Credit middleware: balance spent concurrently",
                extra={"path": request.url.path, "user_id": user_id},
            )
            return _insufficient(cost, exc.available)
        except DuplicateTransaction:
            # A concurrent request with the same id committed first
            logger.warning(
                "Credit middleware: request %s charged concurrently, dropping result",
                request_id,
                extra={"path": request.url.path, "user_id": user_id},
            )
            return _already_charged(request_id, None)
        except TransientStoreFailure as exc:
            logger.error(
                "Credit middleware: could not record consumption: %s",
                exc.message,
                extra={"path": request.url.path, "user_id": user_id},
            )
            return JSONResponse(
                status_code=503,
                content={"detail": "Credit ledger temporarily unavailable, please retry."},
            )

        response.headers["X-Credits-Consumed"] = str(result.consumed)
        response.headers["X-Credits-Remaining"] = str(
            await self.credit_service.remaining_balance(user_id)
        )
        return response
