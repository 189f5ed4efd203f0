"""Configuration model — immutable data containers describing a session."""

from __future__ import annotations

import dataclasses

from cryptstore._masterkey import DEFAULT_SCRYPT_BLOCK_SIZE, DEFAULT_SCRYPT_COST, DEFAULT_SHORTENING_THRESHOLD
from cryptstore._upload import DEFAULT_SEGMENT_SIZE

# Shortened node names are a fixed 32 characters; below this the wrapper would be longer than the name.
_MIN_SHORTENING_THRESHOLD = 36


@dataclasses.dataclass(frozen=True)
class BackendConfig:
    """Describes a backend instance.

    :param type: Backend type identifier (e.g. ``"local"``, ``"s3"``).
    :param options: Backend-specific configuration options.
    """

    type: str
    options: dict[str, object] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class VaultProfile:
    """Parameters for creating a vault.

    :param root: Vault root path on the backend.
    :param shortening_threshold: Ciphertext names longer than this are shortened.
    :param scrypt_cost: Scrypt cost parameter (a power of two).
    :param scrypt_block_size: Scrypt block size.
    """

    root: str
    shortening_threshold: int = DEFAULT_SHORTENING_THRESHOLD
    scrypt_cost: int = DEFAULT_SCRYPT_COST
    scrypt_block_size: int = DEFAULT_SCRYPT_BLOCK_SIZE

    def validate(self) -> None:
        if self.shortening_threshold < _MIN_SHORTENING_THRESHOLD:
            raise ValueError(
                f"Vault '{self.root}': shortening_threshold must be at least {_MIN_SHORTENING_THRESHOLD}"
            )
        if self.scrypt_cost < 2 or self.scrypt_cost & (self.scrypt_cost - 1):
            raise ValueError(f"Vault '{self.root}': scrypt_cost must be a power of two")
        if self.scrypt_block_size < 1:
            raise ValueError(f"Vault '{self.root}': scrypt_block_size must be positive")


@dataclasses.dataclass(frozen=True)
class TransferOptions:
    """Segmented upload tuning.

    :param segment_size: Bytes per segment.
    :param concurrency: Parallel segment uploads.
    :param checksum: Verify the MD5 of every segment.
    :param retries: Extra attempts for transient segment failures.
    """

    segment_size: int = DEFAULT_SEGMENT_SIZE
    concurrency: int = 4
    checksum: bool = True
    retries: int = 0

    def validate(self) -> None:
        if self.segment_size <= 0:
            raise ValueError("segment_size must be positive")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.retries < 0:
            raise ValueError("retries must not be negative")


@dataclasses.dataclass(frozen=True)
class SessionConfig:
    """Top-level configuration container.

    :param backend: The storage backend.
    :param vaults: Vault profiles by name.
    :param transfer: Segmented upload options.
    :param key_maintenance_period: Seconds between missing file key runs.
    """

    backend: BackendConfig = dataclasses.field(default_factory=lambda: BackendConfig(type="local"))
    vaults: dict[str, VaultProfile] = dataclasses.field(default_factory=dict)
    transfer: TransferOptions = dataclasses.field(default_factory=TransferOptions)
    key_maintenance_period: float = 60.0

    def validate(self) -> None:
        """Validate every section.

        :raises ValueError: If any value is out of range or two vaults nest.
        """
        if not self.backend.type:
            raise ValueError("Backend type must not be empty")
        self.transfer.validate()
        if self.key_maintenance_period <= 0:
            raise ValueError("key_maintenance_period must be positive")
        roots: dict[str, str] = {}
        for name, profile in self.vaults.items():
            profile.validate()
            root = profile.root.strip("/")
            for other_name, other in roots.items():
                if root == other or root.startswith(other + "/") or other.startswith(root + "/"):
                    raise ValueError(f"Vault '{name}' overlaps vault '{other_name}' at '{profile.root}'")
            roots[name] = root

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> SessionConfig:
        """Construct from a plain dict (e.g. parsed TOML/JSON).

        :param data: Dict with optional ``backend``, ``vaults``, ``transfer``
            and ``key_maintenance_period`` keys.
        """
        raw_backend = data.get("backend", {"type": "local"})
        raw_vaults = data.get("vaults", {})
        raw_transfer = data.get("transfer", {})
        if not isinstance(raw_backend, dict) or not isinstance(raw_vaults, dict) or not isinstance(raw_transfer, dict):
            msg = "Expected 'backend', 'vaults' and 'transfer' to be dicts"
            raise TypeError(msg)

        backend = BackendConfig(type=str(raw_backend["type"]), options=dict(raw_backend.get("options", {})))

        vaults: dict[str, VaultProfile] = {}
        for name, prof in raw_vaults.items():
            if not isinstance(prof, dict):
                msg = f"Vault profile for '{name}' must be a dict"
                raise TypeError(msg)
            vaults[str(name)] = VaultProfile(
                root=str(prof["root"]),
                shortening_threshold=int(prof.get("shortening_threshold", DEFAULT_SHORTENING_THRESHOLD)),
                scrypt_cost=int(prof.get("scrypt_cost", DEFAULT_SCRYPT_COST)),
                scrypt_block_size=int(prof.get("scrypt_block_size", DEFAULT_SCRYPT_BLOCK_SIZE)),
            )

        transfer = TransferOptions(
            segment_size=int(raw_transfer.get("segment_size", DEFAULT_SEGMENT_SIZE)),
            concurrency=int(raw_transfer.get("concurrency", 4)),
            checksum=bool(raw_transfer.get("checksum", True)),
            retries=int(raw_transfer.get("retries", 0)),
        )

        period = data.get("key_maintenance_period", 60.0)
        if not isinstance(period, (int, float)):
            msg = "'key_maintenance_period' must be a number"
            raise TypeError(msg)
        return cls(backend=backend, vaults=vaults, transfer=transfer, key_maintenance_period=float(period))
