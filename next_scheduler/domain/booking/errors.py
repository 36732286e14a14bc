"""Booking errors - surfaced synchronously to the booking caller"""


class BookingError(Exception):
    status_code = 400
    code = "booking_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(BookingError):
    status_code = 400
    code = "validation_error"


class SellerNotFoundError(BookingError):
    status_code = 404
    code = "seller_not_found"


class ConflictError(BookingError):
    status_code = 409
    code = "slot_conflict"


class PersistenceError(BookingError):
    status_code = 500
    code = "persistence_error"
