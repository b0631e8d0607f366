from enum import StrEnum


class BookingScope(StrEnum):
    # Customer scopes
    READ = "bookings:read"  # view own bookings
    WRITE = "bookings:write"  # create a booking, confirm completion, open a dispute
    CANCEL = "bookings:cancel"  # cancel own booking
    PAY = "bookings:pay"  # start payment for an accepted booking

    # Provider scopes
    MANAGE = "bookings:manage"  # accept / decline / cancel / complete own bookings
    EARNINGS = "earnings:read"  # view own earnings ledger and summary

    # Internal: payments-ms marks bookings paid once the charge settles
    PAYMENTS = "bookings:payments"

    # Admin scopes
    ADMIN = "admin:bookings"
    ADMIN_READ = "admin:bookings:read"
    ADMIN_WRITE = "admin:bookings:write"
    ADMIN_REFUND = "admin:bookings:refund"


BOOKING_SCOPE_DESCRIPTIONS: dict[str, str] = {
    BookingScope.READ: "View your own bookings and receipts.",
    BookingScope.WRITE: "Book a service, confirm completion or open a dispute.",
    BookingScope.CANCEL: "Cancel your own pending or accepted booking.",
    BookingScope.PAY: "Pay for a booking the provider has accepted.",
    BookingScope.MANAGE: "Accept, decline, cancel or complete bookings for your services.",
    BookingScope.EARNINGS: "View your earnings and pending payouts.",
    BookingScope.PAYMENTS: "Mark bookings as paid (payments service only).",
    BookingScope.ADMIN_READ: "Read any booking regardless of owner (admin).",
    BookingScope.ADMIN_WRITE: "Change any booking status (admin).",
    BookingScope.ADMIN_REFUND: "Refund any paid or disputed booking (admin).",
}
