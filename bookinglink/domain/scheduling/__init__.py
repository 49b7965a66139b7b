"""
Scheduling Domain

Booking links, availability and the confirmation flow that pushes bookings to
the CRM and Google Calendar.

Structure:
```
bookinglink/domain/scheduling/
├── __init__.py
├── schemas.py                # Request/response and progress schemas
├── repository.py             # Meeting, link and connection queries
├── errors.py                 # Validation errors (HTTPException subclasses)
├── time_calculator.py        # Timezone normalization and formatting
├── availability_service.py   # Busy interval merge, slot generation
├── token_service.py          # Booking link issue/validation
├── progress.py               # Progress log sink, hub and subscribe()
├── appointment_writer.py     # CRM create/verify/repair state machine
├── calendar_event_writer.py  # Google Calendar event create/delete
├── booking_service.py        # Confirmation flow
├── manage_service.py         # Reschedule / cancel flow
└── router.py                 # Public and staff endpoints
```
"""
