"""Versioning policies — how the next component version is chosen.

The policy is configurable (``ProdConfig.versioning_scheme``):

- ``semantic``: bump the patch of the highest existing version, starting
  at ``1.0.0``.
- ``content-hash``: derive the version from the content hash alone, so
  the same bytes always map to the same version.
"""

from __future__ import annotations

from typing import NamedTuple, Protocol

from fleetforge.models.components import SEMVER_PATTERN

INITIAL_VERSION = "1.0.0"


class SemVer(NamedTuple):
    major: int
    minor: int
    patch: int
    prerelease: str = ""

    @classmethod
    def parse(cls, value: str) -> SemVer:
        match = SEMVER_PATTERN.match(value)
        if not match:
            raise ValueError(f"not a semantic version: {value!r}")
        major, minor, patch, pre = match.groups()
        return cls(int(major), int(minor), int(patch), pre or "")

    def sort_key(self) -> tuple[int, int, int, int, str]:
        # A release sorts above its own pre-releases.
        return (self.major, self.minor, self.patch, 0 if self.prerelease else 1, self.prerelease)

    def __str__(self) -> str:
        base = f"{self.major}.{self.minor}.{self.patch}"
        return f"{base}-{self.prerelease}" if self.prerelease else base


def highest_version(versions: list[str]) -> SemVer | None:
    parsed = [SemVer.parse(v) for v in versions]
    if not parsed:
        return None
    return max(parsed, key=SemVer.sort_key)


class VersioningPolicy(Protocol):
    name: str

    def next_version(self, existing: list[str], content_hash: str) -> str:
        ...


class SemanticPatchPolicy:
    """Increment the patch component of the highest existing version."""

    name = "semantic"

    def next_version(self, existing: list[str], content_hash: str) -> str:
        highest = highest_version(existing)
        if highest is None:
            return INITIAL_VERSION
        return str(SemVer(highest.major, highest.minor, highest.patch + 1))


class ContentHashPolicy:
    """``1.0.0-<hash prefix>``: a pure function of the package content."""

    name = "content-hash"

    def __init__(self, base_version: str = INITIAL_VERSION, prefix_length: int = 12) -> None:
        self._base = SemVer.parse(base_version)
        self._prefix_length = prefix_length

    def next_version(self, existing: list[str], content_hash: str) -> str:
        return str(
            SemVer(
                self._base.major,
                self._base.minor,
                self._base.patch,
                content_hash[: self._prefix_length],
            )
        )


_POLICIES: dict[str, type] = {
    SemanticPatchPolicy.name: SemanticPatchPolicy,
    ContentHashPolicy.name: ContentHashPolicy,
}


def get_policy(scheme: str) -> VersioningPolicy:
    """Return the policy for a ``versioning_scheme`` setting."""
    try:
        return _POLICIES[scheme]()
    except KeyError:
        raise ValueError(
            f"Unknown versioning scheme {scheme!r}; expected one of {sorted(_POLICIES)}"
        ) from None
