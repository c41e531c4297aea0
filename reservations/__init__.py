"""
Appointment reservation engine.

Slot availability, slot locking, one-time-code verification and durable
appointment commit for the multi-tenant clinic receptionist.
"""

__version__ = "0.1.0"
