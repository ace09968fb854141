"""Exceptions surfaced to callers of the valuation pipeline."""
from __future__ import annotations


class QuorumError(Exception):
    """Base class for errors raised to callers."""
    pass


class ConfigurationError(QuorumError):
    """Raised when provider configuration is malformed or leaves no providers."""
    pass


class InputValidationError(QuorumError):
    """Raised when a valuation request has neither images nor an item name."""
    pass
