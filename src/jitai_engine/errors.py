"""
Exception types raised inside the jitai_engine package.
"""

from __future__ import annotations


class JitaiError(Exception):
    """
    Base class for engine errors.
    """


class StoreError(JitaiError):
    """
    Raised when the backing store cannot be read or written.
    """


class StateDecodeError(JitaiError):
    """
    Raised when persisted component state cannot be decoded.
    """
