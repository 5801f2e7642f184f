"""Error kinds shared by the ledger services and their callers.

Callers branch on the kind rather than the message:

* ``ValidationFailure`` - reject the request, nothing was applied.
* ``NotFound`` - the entity does not exist for this user.
* ``ExternalServiceError`` - a remote call failed; the step did not happen.
* ``ConfigurationError`` - fatal, raised while wiring the process.
"""


class LedgerError(Exception):
    pass


class ValidationFailure(LedgerError, ValueError):
    pass


class AmountMismatch(ValidationFailure):
    def __init__(self, expected_cents: int, actual_cents: int) -> None:
        self.expected_cents = expected_cents
        self.actual_cents = actual_cents
        super().__init__(
            f"Split amounts ({actual_cents / 100:.2f}) must equal "
            f"transaction total ({expected_cents / 100:.2f})"
        )


class InvalidCategoryReference(ValidationFailure):
    pass


class SystemCategoryProtected(ValidationFailure):
    pass


class InvalidSplitCount(ValidationFailure):
    pass


class NotFound(LedgerError, LookupError):
    pass


class ExternalServiceError(LedgerError):
    pass


class FeedError(ExternalServiceError):
    pass


class MessagingError(ExternalServiceError):
    pass


class ClassifierBackendError(ExternalServiceError):
    pass


class ConfigurationError(LedgerError, RuntimeError):
    pass
