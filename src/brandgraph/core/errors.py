"""
Identity Resolution Errors

Taxonomy:
- ValidationError: caller omitted a required identifier (raised before any store access)
- RelinkConflict: session already belongs to another customer and policy is REJECT
- StoreError: raised by the graph store adapter only (StoreUnavailable, IntegrityViolation)
- RepositoryError: what the repository surfaces to the resolver, wrapping a StoreError

"Not found" is never an exception: lookups return None.
"""

from typing import Optional


class IdentityError(Exception):
    """Base class for every error raised by the identity core"""


class ValidationError(IdentityError, ValueError):
    """Request is missing a required identifier"""


class MissingLinkAttribute(ValidationError):
    """Link operation supplied none of email, phone or customer_id"""

    def __init__(self, message: str = "Link requires at least one of: email, phone, customerId"):
        super().__init__(message)


class RelinkConflict(IdentityError):
    """Session is linked to a different customer and relinking is rejected"""

    def __init__(self, internal_session_id: str, current_customer_id: str, requested_customer_id: str):
        self.internal_session_id = internal_session_id
        self.current_customer_id = current_customer_id
        self.requested_customer_id = requested_customer_id
        super().__init__(
            f"Session {internal_session_id} already belongs to customer "
            f"{current_customer_id}; refusing to relink to {requested_customer_id}"
        )


class StoreError(IdentityError):
    """Backing graph store failure (adapter level)"""


class StoreUnavailable(StoreError):
    """Backing graph store cannot be reached"""


class IntegrityViolation(StoreError):
    """A merge would violate a uniqueness invariant"""


class RepositoryError(IdentityError):
    """Generic repository failure wrapping the underlying store error"""

    def __init__(self, message: str, cause: Optional[StoreError] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def unavailable(self) -> bool:
        return isinstance(self.cause, StoreUnavailable)
