"""Exception hierarchy for the notifier.

All notifier-specific exceptions inherit from NotifierError.
"""


class NotifierError(Exception):
    """Base exception for all notifier errors."""


class ConfigError(NotifierError):
    """Raised when the notification configuration is missing or invalid."""


class CompileError(NotifierError):
    """Raised when a configured expression cannot be compiled."""

    def __init__(self, expression: str, reason: str) -> None:
        self.expression = expression
        self.reason = reason
        super().__init__(f"{reason} (expression: {expression!r})")


class FilterCompileError(CompileError):
    """Raised when a filter expression fails to parse or type-check."""


class PathCompileError(CompileError):
    """Raised when a substitution path expression is malformed."""


class DecodeError(NotifierError):
    """Raised when an inbound push envelope or its payload cannot be decoded."""


class EvaluationError(NotifierError):
    """Raised while evaluating a compiled filter against one event.

    Never escapes FilterPredicate.apply.
    """


class ResolutionError(NotifierError):
    """Raised when a binding cannot be resolved for an event."""


class SecretError(NotifierError):
    """Raised when a secret cannot be fetched from the secret store."""


class DeliveryError(NotifierError):
    """Raised by notifiers when the outbound send fails."""
