"""
Error taxonomy for the recall engine.

Oracles and the store raise these; every component operation catches them
locally and degrades to an empty or partial result.
"""


class MemoryEngineError(Exception):
    """Base class for all engine errors."""


class OracleUnavailable(MemoryEngineError):
    """Network, credential or server-side failure of an oracle call."""


class OracleMalformedResponse(MemoryEngineError):
    """Oracle answered, but the payload is not JSON or violates the schema."""


class ValidationError(MemoryEngineError):
    """A field is out of range or has the wrong shape."""


class NotFound(MemoryEngineError):
    """Unknown owner or memory reference."""
