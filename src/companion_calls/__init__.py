"""
Call orchestration backend for a phone-based companion service.

Places and receives calls, tracks each call's lifecycle, meters connected
minutes and schedules recurring and reminder calls in the user's time zone.
"""

__version__ = "0.1.0"
