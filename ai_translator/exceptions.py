"""
Exception types raised by the translation engine.

Kept in their own module so the pipeline, the plugins and the backend
clients can share them without importing each other.
"""
from typing import List, Optional


class TranslatorError(Exception):
    """Base class for every error raised by the engine."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


class VerificationFailed(TranslatorError):
    """A backend response did not contain a single usable translation item."""


class ProviderError(TranslatorError):
    """Transport or vendor failure while talking to a backend."""

    def __init__(self, message: str, provider: Optional[str] = None,
                 retry_after: Optional[float] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.provider = provider
        self.retry_after = retry_after


class RetriesExhausted(ProviderError):
    """Every attempt of a retried backend invocation failed."""

    def __init__(self, provider: str, attempts: int, last_error: Optional[BaseException] = None):
        message = f"Provider '{provider}' failed after {attempts} attempt(s)"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message, provider=provider)
        self.attempts = attempts
        self.last_error = last_error


class UnconfiguredProvider(TranslatorError):
    """The requested vendor or model is unknown or incompletely configured."""


class JudgeParseFailure(TranslatorError):
    """The judge reply did not contain a usable candidate number."""

    def __init__(self, reply: str, candidate_count: int):
        super().__init__(f"Could not parse a selection between 1 and {candidate_count} from judge reply: {reply!r}")
        self.reply = reply
        self.candidate_count = candidate_count


class PluginError(TranslatorError):
    """Base class for plugin graph problems."""


class CircularDependency(PluginError):
    """The plugin dependency graph contains a cycle."""

    def __init__(self, cycle: List[str]):
        super().__init__("Circular dependency detected: " + " -> ".join(cycle))
        self.cycle = cycle


class MissingDependency(PluginError):
    """A plugin depends on a plugin that was never registered."""

    def __init__(self, plugin: str, dependency: str):
        super().__init__(f"Plugin '{plugin}' depends on '{dependency}' which is not registered")
        self.plugin = plugin
        self.dependency = dependency


class ServiceNotFound(TranslatorError):
    """No plugin provides the requested pipeline service."""


class TranslationFailed(TranslatorError):
    """No usable translation was produced for a request."""
