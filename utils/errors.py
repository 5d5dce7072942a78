# errors.py
"""
Exception hierarchy shared by the counting engine, the services and the HTTP layer.
"""


class PoseCounterError(Exception):
    """Base class for all errors raised by the rehab pose counter"""


class InitializationError(PoseCounterError):
    """The pose model runtime could not be prepared. Fatal for the session."""


class PermissionDeniedError(PoseCounterError):
    """The capture device refused access. Recoverable by starting again."""


class SessionBusyError(PoseCounterError):
    """A session is already active or initializing."""


class TemplateError(PoseCounterError):
    """Base class for template lookup problems; counting falls back to visibility mode."""


class TemplateNotFoundError(TemplateError):
    pass


class InvalidTemplateError(TemplateError):
    pass


class TemplateExtractionError(PoseCounterError):
    """A reference video yielded too few usable keyframes to build a template."""
