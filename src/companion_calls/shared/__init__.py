"""
Shared infrastructure: database, logging, error types.
"""
