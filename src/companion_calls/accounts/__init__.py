"""Accounts, phone lines and the guards evaluated before a call is placed."""
