"""
Query specification: the fluent builder every operation goes through.
"""

from .spec import CREATE_INPUT, IMPORT_INPUT, UPDATE_INPUT, QuerySpec

__all__ = ["QuerySpec", "CREATE_INPUT", "UPDATE_INPUT", "IMPORT_INPUT"]
