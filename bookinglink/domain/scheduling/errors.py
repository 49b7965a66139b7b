"""Scheduling errors raised before any external call is made"""

from fastapi import HTTPException


class BookingLinkNotFound(HTTPException):
    def __init__(self, detail: str = "Booking link not found"):
        super().__init__(status_code=404, detail=detail)


class BookingNotOpen(HTTPException):
    def __init__(self, detail: str = "This booking link has already been used"):
        super().__init__(status_code=400, detail=detail)


class BookingLinkExpired(HTTPException):
    def __init__(self, detail: str = "This booking link has expired"):
        super().__init__(status_code=400, detail=detail)


class MeetingNotFound(HTTPException):
    def __init__(self, detail: str = "Meeting not found"):
        super().__init__(status_code=404, detail=detail)


class InvalidSlot(HTTPException):
    def __init__(self, detail: str = "Selected time is not valid"):
        super().__init__(status_code=400, detail=detail)


class InvalidTimezoneError(HTTPException):
    def __init__(self, detail: str = "Invalid timezone"):
        super().__init__(status_code=400, detail=detail)


class ChangeWindowClosed(HTTPException):
    def __init__(self, hours: int):
        super().__init__(
            status_code=400,
            detail=f"Changes are not allowed within {hours} hours of the appointment",
        )


class NoActiveBooking(HTTPException):
    def __init__(self, detail: str = "There is no active booking to change"):
        super().__init__(status_code=400, detail=detail)


class MeetingWriteFailed(HTTPException):
    def __init__(self, detail: str = "Failed to save booking"):
        super().__init__(status_code=500, detail=detail)
