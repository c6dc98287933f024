"""
TenantDirectory — maps request context to the owning tenant.

Resolution order for ``resolve_tenant``:
  1. explicit hint (``?org=`` / ``X-Org-Subdomain``), as a subdomain or a tenant id
  2. subdomain parsed from the Host header (reserved names and the bare apex
     never match)
  3. custom domain match on the full host
  4. the tag's owner, when a tag id is present

Lookups have no side effects, so repeated calls with the same inputs return
the same tenant.
"""

from __future__ import annotations

import ipaddress
from typing import Iterable, Optional

from errors import TenantUnresolvedError
from repositories.protocol import TenantRepository
from schemas.models.tenant import Tenant
from shared.logging import get_logger

log = get_logger(__name__)


def parse_subdomain(
    host: Optional[str], apex_domain: str, reserved: Iterable[str]
) -> Optional[str]:
    """Extract the tenant label from a Host header value.

    ``grace.churchtap.app`` → ``grace``; ``churchtap.app``, ``www.churchtap.app``,
    ``localhost:3000`` and bare IPs → None. Hosts outside the apex use their
    first label when they have at least three.
    """
    if not host:
        return None
    hostname = _strip_port(host.strip().lower())
    if not hostname or "localhost" in hostname or _is_ip(hostname):
        return None

    apex = apex_domain.lower()
    if hostname == apex:
        return None
    if hostname.endswith("." + apex):
        label = hostname[: -len(apex) - 1].split(".")[-1]
    else:
        labels = hostname.split(".")
        if len(labels) < 3:
            return None
        label = labels[0]

    if not label or label in {r.lower() for r in reserved}:
        return None
    return label


def _strip_port(host: str) -> str:
    if host.startswith("["):
        # [::1]:8000
        return host[1:].split("]", 1)[0]
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


class TenantDirectory:
    def __init__(
        self,
        repository: TenantRepository,
        *,
        default_tenant_id: str,
        apex_domain: str,
        reserved_subdomains: Iterable[str] = ("www",),
    ) -> None:
        self._repo = repository
        self.default_tenant_id = default_tenant_id
        self._apex_domain = apex_domain
        self._reserved = frozenset(s.lower() for s in reserved_subdomains)

    async def resolve_tenant(
        self,
        host_hint: Optional[str] = None,
        query_hint: Optional[str] = None,
        tag_id: Optional[str] = None,
    ) -> Optional[Tenant]:
        if query_hint:
            tenant = await self._from_hint(query_hint.strip())
            if tenant is not None:
                return tenant

        subdomain = parse_subdomain(host_hint, self._apex_domain, self._reserved)
        if subdomain:
            tenant = await self._repo.lookup_by_subdomain(subdomain)
            if tenant is not None:
                return tenant

        if host_hint and not subdomain:
            hostname = _strip_port(host_hint.strip().lower())
            if hostname and hostname != self._apex_domain and "." in hostname:
                tenant = await self._repo.lookup_by_custom_domain(hostname)
                if tenant is not None:
                    return tenant

        if tag_id:
            return await self.lookup_by_tag(tag_id)
        return None

    async def resolve_or_default(
        self,
        host_hint: Optional[str] = None,
        query_hint: Optional[str] = None,
        tag_id: Optional[str] = None,
    ) -> Tenant:
        tenant = await self.resolve_tenant(host_hint, query_hint, tag_id)
        if tenant is not None:
            return tenant
        log.warning(
            "tenant_unresolved",
            host=host_hint,
            hint=query_hint,
            tag_id=tag_id,
            fallback_tenant_id=self.default_tenant_id,
        )
        return await self.default_tenant()

    async def lookup_by_tag(self, tag_id: str) -> Optional[Tenant]:
        tenant = await self._repo.lookup_by_tag_id(tag_id)
        if tenant is None or not tenant.is_active:
            return None
        return tenant

    async def get(self, tenant_id: str) -> Optional[Tenant]:
        tenant = await self._repo.get_by_id(tenant_id)
        if tenant is None or not tenant.is_active:
            return None
        return tenant

    async def default_tenant(self) -> Tenant:
        if not self.default_tenant_id:
            raise TenantUnresolvedError(
                "No tenant matched and no default tenant is configured"
            )
        tenant = await self._repo.get_by_id(self.default_tenant_id)
        if tenant is None:
            # unprovisioned default: still attribute to its id
            return Tenant(tenant_id=self.default_tenant_id, name="default")
        return tenant

    async def _from_hint(self, hint: str) -> Optional[Tenant]:
        if not hint:
            return None
        tenant = await self._repo.lookup_by_subdomain(hint.lower())
        if tenant is not None:
            return tenant
        return await self.get(hint)
