"""Error kinds raised by the outreach core.

Service functions raise these; a transport layer maps them to responses
(Validation → 400, Authorization → 403, NotFound → 404, StateConflict → 409).
Background workers catch them at the task boundary and record the outcome
on the row they drive (CV, campaign or email log).
"""


class ScholarError(Exception):
    """Base class for every error the core raises on purpose."""


class ValidationError(ScholarError):
    """Bad input: unsupported mime, oversize upload, missing fields."""


class ExtractionError(ValidationError):
    """Document bytes could not be decoded to text."""


class AuthorizationError(ScholarError):
    """Resource belongs to a different tenant."""


class NotFoundError(ScholarError):
    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class StateConflictError(ScholarError):
    """Operation not allowed in the entity's current state."""


class TransientError(ScholarError):
    """I/O failure that may succeed on a later attempt."""


class LLMError(TransientError):
    pass


class StorageError(TransientError):
    pass


class MailDeliveryError(TransientError):
    pass


class FatalError(ScholarError):
    """Never retried."""


class DecryptionError(FatalError):
    pass


class SecurityViolation(FatalError):
    pass
