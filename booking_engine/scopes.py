from enum import StrEnum


class BookingScope(StrEnum):
    # Guest scopes
    READ = "bookings:read"  # view own bookings, quotes and availability
    WRITE = "bookings:write"  # create a booking
    CANCEL = "bookings:cancel"  # cancel own booking

    # Host scopes
    MANAGE = "bookings:manage"  # accept / reject / cancel bookings on own listings

    # Scheduler
    ADVANCE = "bookings:advance"  # run scheduled transitions

    # Admin scopes
    ADMIN = "admin:bookings"
    ADMIN_READ = "admin:bookings:read"
    ADMIN_WRITE = "admin:bookings:write"


BOOKING_SCOPE_DESCRIPTIONS: dict[str, str] = {
    BookingScope.READ: "View your own bookings, quotes and listing availability.",
    BookingScope.WRITE: "Create a new booking on a listing.",
    BookingScope.CANCEL: "Cancel your own confirmed or active booking.",
    BookingScope.MANAGE: "Accept, reject or cancel bookings on your listings.",
    BookingScope.ADVANCE: "Run scheduled booking state transitions.",
    BookingScope.ADMIN_READ: "Read any booking regardless of owner (admin).",
    BookingScope.ADMIN_WRITE: "Cancel any booking on behalf of the platform (admin).",
}
