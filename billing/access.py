"""Capability checks over the caller identity supplied by the auth layer."""
from dataclasses import dataclass
from typing import Optional

from billing.errors import AuthorizationError

ROLE_ADMIN = "admin"
ROLE_HEADMASTER = "headmaster"
ROLE_STUDENT = "student"
ROLE_SYSTEM = "system"


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str
    institution_id: Optional[str] = None


SYSTEM_CALLER = Caller(user_id="system", role=ROLE_SYSTEM)


class AccessPolicy:

    def can_review_proof(self, caller: Caller, invoice) -> bool:
        if caller.role == ROLE_ADMIN:
            return True
        if caller.role == ROLE_HEADMASTER:
            return caller.institution_id is not None and caller.institution_id == invoice.institution_id
        return False

    def can_submit_proof(self, caller: Caller, invoice) -> bool:
        return caller.user_id == invoice.owner_id

    def can_administer(self, caller: Caller) -> bool:
        return caller.role in (ROLE_ADMIN, ROLE_SYSTEM)

    def require(self, allowed: bool, message: str = "Not allowed"):
        if not allowed:
            raise AuthorizationError(message)
