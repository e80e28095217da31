"""
Error payloads and hints for terminal session failures
"""

from .error_handler import ErrorHandler

__all__ = ["ErrorHandler"]
