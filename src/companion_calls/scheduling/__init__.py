"""
Recurring schedules, reminders and the time zone engine that computes
when they fire.
"""
