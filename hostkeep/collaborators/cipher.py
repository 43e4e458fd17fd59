"""AES-256-CBC file encryption compatible with ``openssl enc -pbkdf2``.

Files produced here decrypt with::

    openssl enc -d -aes-256-cbc -pbkdf2 -in backup.tar.gz.enc -out backup.tar.gz

Layout: ``Salted__`` magic, 8 byte salt, then the CBC ciphertext with PKCS#7
padding. Key and IV come from PBKDF2-HMAC-SHA256 over the passphrase (10000
iterations, 48 bytes of output), which is what openssl uses by default.
"""

import logging
import os
import secrets
from pathlib import Path

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher as AESCipher
from cryptography.hazmat.primitives.ciphers import algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from hostkeep.utils.errors import CollaboratorError

from .base import Cipher, PathLike

logger = logging.getLogger(__name__)

MAGIC = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16
ITERATIONS = 10000
CHUNK_SIZE = 1024 * 1024


def generate_passphrase() -> str:
    """Random passphrase with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def _derive(passphrase: str, salt: bytes, iterations: int) -> tuple:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE + IV_SIZE,
        salt=salt,
        iterations=iterations,
    )
    material = kdf.derive(passphrase.encode("utf-8"))
    return material[:KEY_SIZE], material[KEY_SIZE:]


class OpenSSLCipher(Cipher):
    """Streams files through AES-256-CBC with an openssl-compatible header."""

    def __init__(self, iterations: int = ITERATIONS):
        self.iterations = iterations

    def encrypt(self, plain_file: PathLike, cipher_file: PathLike, passphrase: str) -> None:
        """Encrypt plain_file into cipher_file."""
        if not passphrase:
            raise CollaboratorError("An encryption passphrase is required")

        salt = os.urandom(SALT_SIZE)
        key, iv = _derive(passphrase, salt, self.iterations)
        encryptor = AESCipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        padder = padding.PKCS7(algorithms.AES.block_size).padder()

        cipher_file = Path(cipher_file)
        partial = cipher_file.with_name(cipher_file.name + ".partial")

        logger.info("Encrypting %s -> %s", plain_file, cipher_file)
        try:
            with open(plain_file, "rb") as src, open(partial, "wb") as dst:
                dst.write(MAGIC + salt)
                for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                    dst.write(encryptor.update(padder.update(chunk)))
                dst.write(encryptor.update(padder.finalize()) + encryptor.finalize())
                dst.flush()
                os.fsync(dst.fileno())
            os.replace(partial, cipher_file)
        except OSError as e:
            if partial.exists():
                partial.unlink()
            raise CollaboratorError(f"Failed to encrypt {plain_file}: {e}") from e

    def decrypt(self, cipher_file: PathLike, plain_file: PathLike, passphrase: str) -> None:
        """Decrypt cipher_file into plain_file."""
        plain_file = Path(plain_file)
        partial = plain_file.with_name(plain_file.name + ".partial")

        logger.info("Decrypting %s -> %s", cipher_file, plain_file)
        try:
            with open(cipher_file, "rb") as src:
                header = src.read(len(MAGIC) + SALT_SIZE)
                if len(header) != len(MAGIC) + SALT_SIZE or not header.startswith(MAGIC):
                    raise CollaboratorError(f"{cipher_file} is not an openssl salted file")

                key, iv = _derive(passphrase, header[len(MAGIC):], self.iterations)
                decryptor = AESCipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
                unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()

                with open(partial, "wb") as dst:
                    for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                        dst.write(unpadder.update(decryptor.update(chunk)))
                    try:
                        dst.write(unpadder.update(decryptor.finalize()) + unpadder.finalize())
                    except ValueError as e:
                        raise CollaboratorError(
                            "Bad decrypt: wrong passphrase or corrupted archive",
                            suggestions=["Check the passphrase and retry"],
                        ) from e
            os.replace(partial, plain_file)
        except OSError as e:
            raise CollaboratorError(f"Failed to decrypt {cipher_file}: {e}") from e
        finally:
            if partial.exists():
                partial.unlink()
