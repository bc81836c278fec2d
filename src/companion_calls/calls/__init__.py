"""
Call session lifecycle.

NOTE:
Keep this package __init__ lightweight. Importing ORM models here would
trigger mapper configuration whenever any submodule is imported.
"""

__all__: list[str] = []
