class NotFound(ValueError):
    """A referenced user, project, balance, contact or row does not exist."""


class InvalidScope(ValueError):
    """A write named both a personal balance and a project."""


class TransferInvariantViolation(ValueError):
    pass


class ExtractionUnintelligible(ValueError):
    """The extraction service answered, but nothing usable came back."""


class ExtractionTimeout(RuntimeError):
    pass


class AtomicityFailure(RuntimeError):
    """A multi-write unit failed and was rolled back in full."""


class ConfirmationExpired(NotFound):
    """The pending batch outlived its TTL before the user answered."""


class CredentialsExhausted(RuntimeError):
    """Every configured extraction key is out of quota."""
