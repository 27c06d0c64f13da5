"""Adapter manifest model and the domain allow-list check.

The manifest is produced and fully validated by the external registry
tooling; the runtime only parses what it needs and performs the structural
checks required to bind a capability context safely.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from sandbox.errors import AdapterLoadError


class Permission(StrEnum):
    READ_FORMS = "read:forms"
    WRITE_FORMS = "write:forms"
    STORAGE_LOCAL = "storage:local"
    NOTIFICATIONS = "notifications"
    NAVIGATE = "navigate"
    HUMAN_INTERACT = "human:interact"


class TrustLevel(StrEnum):
    OFFICIAL = "official"
    VERIFIED = "verified"
    COMMUNITY = "community"


@dataclass(frozen=True)
class DomainRule:
    """One allow-list entry: a bare host, optionally with a path prefix."""

    host: str
    path_prefix: str = ""

    @classmethod
    def parse(cls, entry: str) -> DomainRule:
        host, _, path = entry.strip().partition("/")
        return cls(host=host.lower(), path_prefix=f"/{path}" if path else "")

    def matches(self, hostname: str, path: str) -> bool:
        if hostname != self.host:
            return False
        if self.path_prefix and not path.startswith(self.path_prefix):
            return False
        return True

    def __str__(self) -> str:
        return f"{self.host}{self.path_prefix}"


@dataclass(frozen=True)
class ToolSummary:
    name: str
    security_level: str = "read_only"  # read_only | write
    category: str = "info"


@dataclass(frozen=True)
class AdapterManifest:
    """Immutable adapter metadata consumed read-only by the runtime."""

    id: str
    name: str
    version: str = "0.0.0"
    description: str = ""
    domains: tuple[DomainRule, ...] = ()
    required_permissions: frozenset[Permission] = frozenset()
    optional_permissions: frozenset[Permission] = frozenset()
    tools: tuple[ToolSummary, ...] = ()
    trust_level: TrustLevel = TrustLevel.COMMUNITY
    declarative: bool = False
    extra: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def granted_permissions(self) -> frozenset[Permission]:
        return self.required_permissions | self.optional_permissions

    def allows(self, permission: Permission) -> bool:
        return permission in self.granted_permissions

    def summary_for(self, tool_name: str) -> ToolSummary | None:
        for summary in self.tools:
            if summary.name == tool_name:
                return summary
        return None

    @classmethod
    def from_dict(cls, data: Any) -> AdapterManifest:
        """Build a manifest from parsed manifest.json content.

        Raises:
            AdapterLoadError: when the structure cannot bind a context.
        """
        if not isinstance(data, dict):
            raise AdapterLoadError("Manifest must be a JSON object")

        adapter_id = data.get("id")
        if not isinstance(adapter_id, str) or not adapter_id.strip():
            raise AdapterLoadError('Manifest "id" must be a non-empty string')

        domains_raw = data.get("domains")
        if not isinstance(domains_raw, list) or not all(
            isinstance(d, str) and d.strip() for d in domains_raw
        ):
            raise AdapterLoadError(
                f'Manifest "{adapter_id}": "domains" must be a list of strings'
            )

        perms_raw = data.get("permissions") or {}
        try:
            required = frozenset(Permission(p) for p in perms_raw.get("required", []))
            optional = frozenset(Permission(p) for p in perms_raw.get("optional", []))
        except ValueError as e:
            raise AdapterLoadError(f'Manifest "{adapter_id}": {e}') from e

        tools = tuple(
            ToolSummary(
                name=t["name"],
                security_level=t.get("securityLevel", "read_only"),
                category=t.get("category", "info"),
            )
            for t in data.get("tools", [])
            if isinstance(t, dict) and t.get("name")
        )

        try:
            trust = TrustLevel(data.get("trustLevel", "community"))
        except ValueError as e:
            raise AdapterLoadError(f'Manifest "{adapter_id}": {e}') from e

        known = {
            "id", "name", "version", "description", "domains",
            "permissions", "tools", "trustLevel", "declarative",
        }
        return cls(
            id=adapter_id,
            name=data.get("name") or adapter_id,
            version=data.get("version", "0.0.0"),
            description=data.get("description", ""),
            domains=tuple(DomainRule.parse(d) for d in domains_raw),
            required_permissions=required,
            optional_permissions=optional,
            tools=tools,
            trust_level=trust,
            declarative=bool(data.get("declarative", False)),
            extra={k: v for k, v in data.items() if k not in known},
        )


def load_manifest(path: Path) -> AdapterManifest:
    """Read and parse a manifest.json file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise AdapterLoadError(f"Cannot read {path}: {e}") from e
    return AdapterManifest.from_dict(data)


def is_url_allowed(url: str, domains: tuple[DomainRule, ...] | list[DomainRule]) -> bool:
    """Return True if ``url``'s host (and path prefix, if declared) matches an entry."""
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError:
        return False
    if parts.scheme not in ("http", "https") or not hostname:
        return False
    path = parts.path or "/"
    return any(rule.matches(hostname, path) for rule in domains)
