"""Wildcard matching and per-application instance filters."""

from __future__ import annotations

import functools
import logging
import re

from pydantic import BaseModel, Field

from infra_inspector.prometheus import HostFilter

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str] | None:
    regex = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
    try:
        return re.compile(regex)
    except re.error:
        logger.debug("Ignoring unparsable pattern %r", pattern)
        return None


def match_pattern(value: str, pattern: str) -> bool:
    """Match *value* against a glob *pattern* where ``*`` is the only wildcard.

    An unparsable pattern never matches.
    """
    if value == pattern:
        return True
    if "*" not in pattern:
        return False
    compiled = _compile(pattern)
    if compiled is None:
        return False
    return compiled.match(value) is not None


def match_any(value: str, patterns: list[str]) -> bool:
    """True when *patterns* is empty or any of them matches *value*."""
    if not patterns:
        return True
    return any(match_pattern(value, p) for p in patterns)


class InstanceFilter(BaseModel):
    """Which instances of one application type to inspect.

    Business groups and tags are evaluated by the metrics backend; the glob
    pattern fields are re-applied locally to every returned series.
    """

    address_patterns: list[str] = Field(default_factory=list)
    hostname_patterns: list[str] = Field(default_factory=list)
    container_patterns: list[str] = Field(default_factory=list)
    business_groups: list[str] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (
            self.address_patterns
            or self.hostname_patterns
            or self.container_patterns
            or self.business_groups
            or self.tags
        )

    def to_backend_filter(self) -> HostFilter | None:
        """Project onto the fields the backend understands, or ``None``."""
        if not self.business_groups and not self.tags:
            return None
        return HostFilter(business_groups=list(self.business_groups), tags=dict(self.tags))

    def matches_address(self, address: str) -> bool:
        return match_any(address, self.address_patterns)

    def matches_hostname(self, hostname: str) -> bool:
        return match_any(hostname, self.hostname_patterns)

    def matches_container(self, container: str) -> bool:
        # Container patterns only constrain instances that run in a container.
        if not container:
            return True
        return match_any(container, self.container_patterns)
