from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger


class BookingDomainError(Exception):
    """Base class for errors raised by the booking rules and money math."""


class InvalidAmountError(BookingDomainError, ValueError):
    pass


class NegativeValueError(InvalidAmountError):
    def __init__(self, field: str, value: int):
        self.field = field
        self.value = value
        super().__init__(f"{field} must not be negative (got {value})")


class UnknownStatusError(BookingDomainError, ValueError):
    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Unknown booking status: {status}")


class InvalidTransitionError(BookingDomainError):
    def __init__(self, current: str, attempted: str, allowed: list[str]):
        self.current = current
        self.attempted = attempted
        self.allowed = allowed
        super().__init__(
            f"Invalid booking status transition from '{current}' to '{attempted}'. "
            f"Allowed: {', '.join(allowed) or '(none)'}"
        )


class NegativeNetAmountError(BookingDomainError):
    """Fee plus GST exceeded the gross amount. Indicates misconfigured rates."""

    def __init__(self, gross: int, fee: int, gst: int):
        self.gross = gross
        self.fee = fee
        self.gst = gst
        super().__init__(
            f"Net amount is negative: gross={gross} fee={fee} gst={gst}"
        )


class CurrencyMismatchError(BookingDomainError, ValueError):
    def __init__(self, left: str, right: str):
        super().__init__(f"Cannot combine amounts in '{left}' and '{right}'")


# ---------------------------------------------------------------------------
# FastAPI handlers
# ---------------------------------------------------------------------------


async def _invalid_amount_handler(_: Request, exc: InvalidAmountError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)},
    )


async def _invalid_transition_handler(
    _: Request, exc: InvalidTransitionError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "allowed": exc.allowed},
    )


async def _fatal_domain_handler(request: Request, exc: BookingDomainError) -> JSONResponse:
    logger.critical(
        "Fatal booking computation error on {} {}: {}",
        request.method,
        request.url.path,
        exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal booking computation error"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors that escape a route onto HTTP responses."""
    app.add_exception_handler(InvalidAmountError, _invalid_amount_handler)
    app.add_exception_handler(InvalidTransitionError, _invalid_transition_handler)
    app.add_exception_handler(BookingDomainError, _fatal_domain_handler)
