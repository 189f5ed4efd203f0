"""Backend abstract base class — the core contract."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any, TypeVar

from cryptstore._capabilities import Capability
from cryptstore._errors import CapabilityNotSupported
from cryptstore._features import (
    AttributesFinder,
    Copy,
    Delete,
    Directory,
    Find,
    LargeObject,
    ListService,
    Move,
    Read,
    Write,
)

if TYPE_CHECKING:
    from cryptstore._capabilities import CapabilitySet

T = TypeVar("T")

FEATURE_TYPES: dict[Capability, type[Any]] = {
    Capability.DIRECTORY: Directory,
    Capability.MOVE: Move,
    Capability.COPY: Copy,
    Capability.DELETE: Delete,
    Capability.FIND: Find,
    Capability.ATTRIBUTES: AttributesFinder,
    Capability.READ: Read,
    Capability.WRITE: Write,
    Capability.LIST: ListService,
    Capability.LARGE_OBJECT: LargeObject,
}


class Backend(abc.ABC):
    """Abstract base class for all storage backends.

    A backend implements the capability contracts of
    :mod:`cryptstore._features` it declares in :attr:`capabilities`.
    Backend-native exceptions must never leak; they are mapped to
    ``cryptstore`` errors.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Unique identifier for this backend type (e.g. ``'local'``, ``'s3'``)."""

    @property
    @abc.abstractmethod
    def capabilities(self) -> CapabilitySet:
        """Declared capabilities of this backend."""

    def feature(self, cap: Capability) -> Any:
        """Return the implementation of *cap* for this backend.

        :raises CapabilityNotSupported: If the capability is not declared.
        """
        self.capabilities.require(cap, backend=self.name)
        contract = FEATURE_TYPES[cap]
        if not isinstance(self, contract):
            raise CapabilityNotSupported(
                f"Backend '{self.name}' declares '{cap.value}' but does not implement {contract.__name__}",
                capability=cap.value,
                backend=self.name,
            )
        return self

    def close(self) -> None:  # noqa: B027
        """Release resources. Default is a no-op."""

    def unwrap(self, type_hint: type[T]) -> T:
        """Return the native backend handle if it matches the requested type.

        :param type_hint: The expected type (e.g., ``s3fs.S3FileSystem``).
        :raises CapabilityNotSupported: If backend cannot provide the requested type.
        """
        raise CapabilityNotSupported(
            f"Backend '{self.name}' does not expose native handle of type {type_hint.__name__}. "
            f"Override unwrap() in your backend to provide native access.",
            capability="unwrap",
            backend=self.name,
        )
