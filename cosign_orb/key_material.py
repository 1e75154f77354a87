"""Lifecycle of decoded key material on disk."""

import base64
import binascii
import logging
import os
import stat
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from .errors import EmptySecretError, MissingSecretError, SecretDecodeError

logger = logging.getLogger(__name__)

KEY_FILE_MODE = stat.S_IRUSR  # 0o400
SHRED_PASSES = 10


class SecretBuffer:
    """Mutable holder for secret bytes that is zeroed on release."""

    def __init__(self, value: Union[str, bytes, bytearray, None] = None):
        if value is None:
            value = b""
        if isinstance(value, str):
            value = value.encode()
        self._data = bytearray(value)

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return len(self._data) > 0

    def __repr__(self) -> str:
        return f"SecretBuffer(<{len(self._data)} bytes>)"

    def reveal(self) -> bytes:
        return bytes(self._data)

    def clear(self) -> None:
        for i in range(len(self._data)):
            self._data[i] = 0
        self._data = bytearray()


def decode_secret(encoded: SecretBuffer, description: str = "key") -> SecretBuffer:
    """
    Decode base64 key material.

    Args:
        encoded: Base64 text as configured
        description: Human readable name for error messages

    Returns:
        SecretBuffer with the decoded bytes

    Raises:
        MissingSecretError: If nothing was configured
        SecretDecodeError: If the input is not valid base64
        EmptySecretError: If the input decodes to nothing
    """
    if not encoded or not encoded.reveal().strip():
        raise MissingSecretError(
            f"{description.capitalize()} is empty. Check that the environment "
            "variable is set correctly."
        )

    compact = b"".join(encoded.reveal().split())
    try:
        decoded = SecretBuffer(base64.b64decode(compact, validate=True))
    except (binascii.Error, ValueError):
        raise SecretDecodeError(
            f"Failed to decode {description}. Ensure it is valid base64."
        )
    finally:
        del compact

    if not decoded:
        raise EmptySecretError(f"Decoded {description} is empty.")
    return decoded


def destroy_file(path: Union[str, Path], passes: int = SHRED_PASSES) -> None:
    """
    Overwrite a file several times, zero it, then remove it.

    Best effort: a file that is already gone counts as destroyed.
    """
    path = Path(path)
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return

    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
        with open(path, "r+b", buffering=0) as f:
            for _ in range(passes):
                f.seek(0)
                f.write(os.urandom(size))
                os.fsync(f.fileno())
            f.seek(0)
            f.write(b"\x00" * size)
            os.fsync(f.fileno())
    except FileNotFoundError:
        return
    except OSError as e:
        logger.warning("Failed to overwrite %s before removal: %s", path, e)

    path.unlink(missing_ok=True)


class KeyMaterial:
    """Decoded key material written to a permission-restricted file."""

    def __init__(
        self,
        encoded: SecretBuffer,
        path: Union[str, Path],
        password: Optional[SecretBuffer] = None,
        description: str = "key",
    ):
        self.encoded = encoded
        self.path = Path(path)
        self.password = password
        self.description = description
        self.permissions: Optional[int] = None
        self._destroyed = False

    def write(self) -> Path:
        """
        Decode the key and write it with owner-read-only permissions.

        Raises:
            SecretError: If the key is missing, undecodable or empty
        """
        decoded = decode_secret(self.encoded, self.description)
        try:
            # Shred any key file left behind by an earlier run, then create exclusively
            if self.path.exists():
                logger.warning("Destroying stale %s left at %s", self.description, self.path)
                destroy_file(self.path)
            fd = os.open(
                str(self.path),
                os.O_WRONLY | os.O_CREAT | os.O_EXCL,
                stat.S_IRUSR | stat.S_IWUSR,
            )
            with os.fdopen(fd, "wb") as f:
                f.write(decoded.reveal())
            os.chmod(self.path, KEY_FILE_MODE)
            self.permissions = KEY_FILE_MODE
        finally:
            decoded.clear()

        logger.info("Wrote %s: %s", self.description, self.path)
        logger.info("Set %s permissions: %s", self.description, oct(KEY_FILE_MODE)[2:].zfill(4))
        return self.path

    def env(self) -> Dict[str, str]:
        """Environment handed to cosign so it never prompts for a password."""
        if self.password is None:
            return {}
        return {"COSIGN_PASSWORD": self.password.reveal().decode()}

    def destroy(self) -> None:
        """Destroy the key file and clear in-memory copies. Safe to call twice."""
        if not self._destroyed:
            logger.info("Cleaning up secrets...")
        destroy_file(self.path)
        self.encoded.clear()
        if self.password is not None:
            self.password.clear()
        if not self._destroyed:
            logger.info("Secrets destroyed.")
        self._destroyed = True


@contextmanager
def materialize_key(
    encoded: Union[SecretBuffer, str, None],
    path: Union[str, Path],
    password: Union[SecretBuffer, str, None] = None,
    description: str = "key",
) -> Iterator[KeyMaterial]:
    """
    Write decoded key material for the duration of a block.

    The file and all in-memory copies are destroyed when the block exits,
    whether it returns, raises or is interrupted.

    Args:
        encoded: Base64 key material
        path: Where to write the decoded key
        password: Optional key password
        description: Name used in log and error messages

    Yields:
        KeyMaterial with the file written
    """
    if not isinstance(encoded, SecretBuffer):
        encoded = SecretBuffer(encoded)
    if password is not None and not isinstance(password, SecretBuffer):
        password = SecretBuffer(password)

    material = KeyMaterial(encoded, path, password, description)
    try:
        material.write()
        yield material
    finally:
        material.destroy()
