"""Unit tests for key_material.py module."""

import base64
import logging
import stat
import pytest

from cosign_orb.errors import (
    EmptySecretError,
    MissingSecretError,
    SecretDecodeError,
    SecretError,
)
from cosign_orb.key_material import (
    KEY_FILE_MODE,
    KeyMaterial,
    SecretBuffer,
    decode_secret,
    destroy_file,
    materialize_key,
)


class TestSecretBuffer:
    """Tests for SecretBuffer."""

    def test_reveal(self):
        buffer = SecretBuffer("hunter2")
        assert buffer.reveal() == b"hunter2"
        assert len(buffer) == 7
        assert buffer

    def test_clear(self):
        buffer = SecretBuffer(b"hunter2")
        buffer.clear()
        assert buffer.reveal() == b""
        assert not buffer

    def test_repr_hides_value(self):
        assert "hunter2" not in repr(SecretBuffer("hunter2"))

    def test_none_is_empty(self):
        assert not SecretBuffer(None)


class TestDecodeSecret:
    """Tests for decode_secret."""

    def test_valid(self, encoded_private_key, private_key_pem):
        decoded = decode_secret(SecretBuffer(encoded_private_key))
        assert decoded.reveal() == private_key_pem

    def test_wrapped_base64(self, encoded_private_key, private_key_pem):
        wrapped = "\n".join(
            encoded_private_key[i:i + 64] for i in range(0, len(encoded_private_key), 64)
        )
        decoded = decode_secret(SecretBuffer(wrapped))
        assert decoded.reveal() == private_key_pem

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_missing(self, value):
        with pytest.raises(MissingSecretError, match="Private key is empty"):
            decode_secret(SecretBuffer(value), "private key")

    def test_invalid_base64(self):
        with pytest.raises(SecretDecodeError, match="valid base64"):
            decode_secret(SecretBuffer("not base64!!"), "private key")

    def test_empty_after_decode(self, mocker):
        mocker.patch("cosign_orb.key_material.base64.b64decode", return_value=b"")
        with pytest.raises(EmptySecretError, match="Decoded private key is empty"):
            decode_secret(SecretBuffer("AAAA"), "private key")

    def test_errors_are_secret_errors(self):
        for error in (MissingSecretError, SecretDecodeError, EmptySecretError):
            assert issubclass(error, SecretError)


class TestDestroyFile:
    """Tests for destroy_file."""

    def test_removes_file(self, tmp_path):
        path = tmp_path / "cosign.key"
        path.write_bytes(b"secret material")

        destroy_file(path)

        assert not path.exists()

    def test_read_only_file(self, tmp_path):
        path = tmp_path / "cosign.key"
        path.write_bytes(b"secret material")
        path.chmod(KEY_FILE_MODE)

        destroy_file(path)

        assert not path.exists()

    def test_overwrites_before_unlink(self, tmp_path, mocker):
        path = tmp_path / "cosign.key"
        path.write_bytes(b"secret material")
        urandom = mocker.patch(
            "cosign_orb.key_material.os.urandom", side_effect=lambda n: b"x" * n
        )

        destroy_file(path, passes=3)

        assert urandom.call_count == 3
        assert not path.exists()

    def test_missing_file(self, tmp_path):
        destroy_file(tmp_path / "absent.key")


class TestKeyMaterial:
    """Tests for KeyMaterial."""

    def test_write_permissions(self, work_dir, encoded_private_key, private_key_pem):
        material = KeyMaterial(SecretBuffer(encoded_private_key), "cosign.key")

        path = material.write()

        assert path.read_bytes() == private_key_pem
        assert stat.S_IMODE(path.stat().st_mode) == 0o400
        assert material.permissions == KEY_FILE_MODE
        material.destroy()

    def test_write_replaces_stale_file(
        self, work_dir, encoded_private_key, private_key_pem, caplog
    ):
        stale = work_dir / "cosign.key"
        stale.write_bytes(b"stale")
        stale.chmod(0o644)

        material = KeyMaterial(SecretBuffer(encoded_private_key), stale)
        with caplog.at_level(logging.WARNING):
            material.write()

        assert "Destroying stale key left at" in caplog.text
        assert stale.read_bytes() == private_key_pem
        assert stat.S_IMODE(stale.stat().st_mode) == 0o400
        material.destroy()

    def test_env_with_password(self, encoded_private_key):
        material = KeyMaterial(
            SecretBuffer(encoded_private_key), "cosign.key", SecretBuffer("hunter2")
        )
        assert material.env() == {"COSIGN_PASSWORD": "hunter2"}

    def test_env_without_password(self, encoded_private_key):
        material = KeyMaterial(SecretBuffer(encoded_private_key), "cosign.key")
        assert material.env() == {}

    def test_destroy_is_idempotent(self, work_dir, encoded_private_key, caplog):
        password = SecretBuffer("hunter2")
        material = KeyMaterial(SecretBuffer(encoded_private_key), "cosign.key", password)
        material.write()

        with caplog.at_level(logging.INFO):
            material.destroy()
            material.destroy()

        assert not (work_dir / "cosign.key").exists()
        assert not password
        assert caplog.text.count("Secrets destroyed.") == 1


class TestMaterializeKey:
    """Tests for the materialize_key context manager."""

    def test_file_exists_only_inside_block(self, work_dir, encoded_private_key, private_key_pem):
        path = work_dir / "cosign.key"

        with materialize_key(encoded_private_key, path, "hunter2") as material:
            assert path.read_bytes() == private_key_pem
            assert material.env() == {"COSIGN_PASSWORD": "hunter2"}

        assert not path.exists()

    def test_destroyed_on_exception(self, work_dir, encoded_private_key):
        path = work_dir / "cosign.key"

        with pytest.raises(RuntimeError):
            with materialize_key(encoded_private_key, path):
                assert path.exists()
                raise RuntimeError("signing failed")

        assert not path.exists()

    def test_destroyed_on_interrupt(self, work_dir, encoded_private_key):
        path = work_dir / "cosign.key"

        with pytest.raises(KeyboardInterrupt):
            with materialize_key(encoded_private_key, path):
                raise KeyboardInterrupt

        assert not path.exists()

    def test_invalid_base64_leaves_no_file(self, work_dir):
        path = work_dir / "cosign.key"

        with pytest.raises(SecretDecodeError):
            with materialize_key("%%% not base64 %%%", path):
                pytest.fail("block must not run")

        assert not path.exists()

    def test_empty_secret_leaves_no_file(self, work_dir):
        path = work_dir / "cosign.key"

        with pytest.raises(MissingSecretError):
            with materialize_key("", path, description="private key"):
                pytest.fail("block must not run")

        assert not path.exists()

    def test_clears_encoded_buffer(self, work_dir, private_key_pem):
        encoded = SecretBuffer(base64.b64encode(private_key_pem))

        with materialize_key(encoded, work_dir / "cosign.key"):
            pass

        assert not encoded
