"""Backend implementations."""

from cryptstore.backends._local import LocalBackend

__all__ = ["LocalBackend"]

try:
    from cryptstore.backends._s3 import S3Backend

    __all__ = [*__all__, "S3Backend"]
except ImportError:  # pragma: no cover
    pass
