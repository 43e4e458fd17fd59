"""Tests for archive encryption."""

import shutil
import subprocess
from pathlib import Path

import pytest

from hostkeep.collaborators import OpenSSLCipher, generate_passphrase
from hostkeep.utils.errors import CollaboratorError


class TestOpenSSLCipher:
    """Test openssl-compatible encryption."""

    def setup_method(self):
        """Setup test environment."""
        self.cipher = OpenSSLCipher(iterations=1000)

    def test_encrypt_then_decrypt(self, temp_directory):
        """Test that a file survives encryption."""
        plain = Path(temp_directory) / "archive.tar.gz"
        plain.write_bytes(b"backup data" * 5000)
        encrypted = Path(temp_directory) / "archive.tar.gz.enc"
        restored = Path(temp_directory) / "restored.tar.gz"

        self.cipher.encrypt(plain, encrypted, "passphrase")
        self.cipher.decrypt(encrypted, restored, "passphrase")

        assert encrypted.read_bytes().startswith(b"Salted__")
        assert restored.read_bytes() == plain.read_bytes()

    def test_wrong_passphrase(self, temp_directory):
        """Test that a wrong passphrase fails without leaving output."""
        plain = Path(temp_directory) / "archive.tar.gz"
        plain.write_bytes(b"backup data")
        encrypted = Path(temp_directory) / "archive.tar.gz.enc"
        restored = Path(temp_directory) / "restored.tar.gz"
        self.cipher.encrypt(plain, encrypted, "right")

        try:
            self.cipher.decrypt(encrypted, restored, "wrong")
        except CollaboratorError as e:
            assert "Bad decrypt" in e.message
            assert not restored.exists()
        else:
            # Padding of a wrong-key decrypt can look valid by chance
            assert restored.read_bytes() != plain.read_bytes()
        assert not Path(str(restored) + ".partial").exists()

    def test_rejects_unsalted_file(self, temp_directory):
        """Test that files without the openssl header are refused."""
        bogus = Path(temp_directory) / "bogus.enc"
        bogus.write_bytes(b"not encrypted at all")

        with pytest.raises(CollaboratorError):
            self.cipher.decrypt(bogus, Path(temp_directory) / "out", "passphrase")

    def test_requires_passphrase(self, temp_directory):
        """Test that an empty passphrase is refused."""
        plain = Path(temp_directory) / "archive.tar.gz"
        plain.write_bytes(b"x")

        with pytest.raises(CollaboratorError):
            self.cipher.encrypt(plain, Path(temp_directory) / "out.enc", "")

    @pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl not installed")
    def test_openssl_can_decrypt(self, temp_directory):
        """Test that the openssl command line decrypts our files."""
        plain = Path(temp_directory) / "archive.tar.gz"
        plain.write_bytes(b"interoperable" * 100)
        encrypted = Path(temp_directory) / "archive.tar.gz.enc"
        OpenSSLCipher().encrypt(plain, encrypted, "secret")

        result = subprocess.run(
            ["openssl", "enc", "-d", "-aes-256-cbc", "-pbkdf2", "-in", str(encrypted), "-pass", "pass:secret"],
            capture_output=True,
        )

        assert result.returncode == 0
        assert result.stdout == plain.read_bytes()


def test_generate_passphrase():
    """Test that generated passphrases are long and distinct."""
    first = generate_passphrase()

    assert len(first) >= 40
    assert first != generate_passphrase()
