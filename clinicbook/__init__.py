"""
Clinic Booking Engine

Appointment booking and lifecycle core for a telehealth clinic: slot
validation, the appointment status state machine, booking orchestration with
an external payment gateway, and the per-appointment intake gate.
"""

__version__ = "1.0.0"
