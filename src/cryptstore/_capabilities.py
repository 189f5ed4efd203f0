"""Capabilities a backend declares, one per feature contract."""

from __future__ import annotations

import dataclasses
import enum
from typing import TYPE_CHECKING

from cryptstore._errors import CapabilityNotSupported

if TYPE_CHECKING:
    from collections.abc import Iterator


class Capability(enum.Enum):
    """One feature contract of :mod:`cryptstore._features`."""

    DIRECTORY = "directory"
    MOVE = "move"
    COPY = "copy"
    DELETE = "delete"
    FIND = "find"
    ATTRIBUTES = "attributes"
    READ = "read"
    WRITE = "write"
    LIST = "list"
    LARGE_OBJECT = "large_object"


# A move can be emulated by copying, deleting the source and checking for conflicts first.
_MOVE_EMULATION = frozenset({Capability.COPY, Capability.DELETE, Capability.FIND})


@dataclasses.dataclass(frozen=True)
class CapabilitySet:
    """The capabilities a backend declares.

    ``MOVE`` means a server-side move. Backends that can only copy leave it
    out; :attr:`emulates_move` tells whether a move can be put together from
    the remaining capabilities.
    """

    capabilities: frozenset[Capability] = frozenset()

    @classmethod
    def of(cls, *caps: Capability) -> CapabilitySet:
        return cls(frozenset(caps))

    @classmethod
    def full(cls) -> CapabilitySet:
        return cls(frozenset(Capability))

    def without(self, *caps: Capability) -> CapabilitySet:
        return CapabilitySet(self.capabilities - set(caps))

    def supports(self, cap: Capability) -> bool:
        return cap in self.capabilities

    @property
    def emulates_move(self) -> bool:
        return Capability.MOVE not in self.capabilities and _MOVE_EMULATION <= self.capabilities

    def require(self, *caps: Capability, backend: str = "") -> None:
        """Raise for the first of *caps* that is not declared.

        :raises CapabilityNotSupported: If a capability is missing.
        """
        for cap in caps:
            if cap not in self.capabilities:
                where = f"Backend '{backend}'" if backend else "Backend"
                raise CapabilityNotSupported(
                    f"{where} does not support '{cap.value}'",
                    capability=cap.value,
                    backend=backend or None,
                )

    def __contains__(self, cap: object) -> bool:
        return cap in self.capabilities

    def __iter__(self) -> Iterator[Capability]:
        return iter(sorted(self.capabilities, key=lambda c: c.name))

    def __len__(self) -> int:
        return len(self.capabilities)

    def __repr__(self) -> str:
        return f"CapabilitySet({{{', '.join(c.name for c in self)}}})"
