"""Outgoing calls to the notification layer."""
