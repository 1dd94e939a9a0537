"""
kvchat :: Errors

Error taxonomy for the decoding core.

  ConfigurationError  malformed config, shape or location mismatch (before generation)
  ExecutionError      executor invocation failed (current call aborted, cleanup runs)
  NumericalError      non-finite logits during token selection (never recovered)

Cancellation is not an error: an aborted call returns its partial output.

INL - 2025
"""


class KVChatError(Exception):
    """Base class for kvchat errors."""


class ConfigurationError(KVChatError):
    """Model or engine configuration is malformed or inconsistent."""


class ExecutionError(KVChatError):
    """A forward evaluation of the network failed."""


class NumericalError(KVChatError):
    """Non-finite value found in logits."""
