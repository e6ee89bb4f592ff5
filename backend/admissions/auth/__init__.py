from admissions.auth.token import RequestContext, get_request_context, verify_token
from admissions.auth.rbac import require_role

__all__ = ["RequestContext", "get_request_context", "verify_token", "require_role"]
