"""
Request and query contexts passed to backends and triggers.

RequestContext describes who is calling (token payload, request-level
tenant). QueryContext is the mutable scratchpad a single operation shares
with its triggers: the filters or input before execution, the data after.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class TokenPayload:
    """Claims of an authenticated caller.

    Attributes:
        user_id: Authenticated user
        tenant_id: Tenant the token is bound to
        role: Access role claimed by the token
    """

    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TokenPayload:
        return cls(
            user_id=data.get("userId", data.get("user_id")),
            tenant_id=data.get("tenantId", data.get("tenant_id")),
            role=data.get("role"),
        )


@dataclass(frozen=True)
class RequestContext:
    """Caller context of one request.

    Attributes:
        token: Authenticated token payload, if any
        tenant_id: Tenant supplied by the request itself (header, subdomain)
        client: Free-form client information for triggers
    """

    token: Optional[TokenPayload] = None
    tenant_id: Optional[str] = None
    client: Dict[str, Any] = field(default_factory=dict)

    def resolve_tenant(self, fallback: str = "000") -> str:
        """Tenant id: token first, then request, then the fallback."""
        if self.token is not None and self.token.tenant_id:
            return self.token.tenant_id
        if self.tenant_id:
            return self.tenant_id
        return fallback


@dataclass
class QueryContext:
    """Per-operation state shared with triggers.

    Attributes:
        data: Result of the operation (set before after-triggers run)
        input: Mutation payload (set before before-create/update triggers)
        filters: Where map (set before before-find/delete triggers)
        parent: Parent object when resolving nested data
        params: Free-form operation parameters (chart options, arguments)
        access_role: Access role used to select per-model triggers
        route: Route used to select per-model triggers
    """

    data: Any = None
    input: Optional[Dict[str, Any]] = None
    filters: Optional[Dict[str, Any]] = None
    parent: Any = None
    params: Dict[str, Any] = field(default_factory=dict)
    access_role: str = ""
    route: str = ""
