from app.services.authorization.engine import AuthorizationEngine
from app.services.authorization.permissions import GUEST_OPERATIONS, ROLE_PERMISSIONS, ROLE_SCOPES

__all__ = ["AuthorizationEngine", "GUEST_OPERATIONS", "ROLE_PERMISSIONS", "ROLE_SCOPES"]
