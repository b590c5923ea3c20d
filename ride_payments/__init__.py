"""Payment lifecycle and capture orchestration for the ride-booking marketplace."""

__version__ = "0.1.0"
