"""Decryption of passwords embedded in connection strings."""

from abc import ABC, abstractmethod

from cryptography.fernet import Fernet


class SecretDecryptor(ABC):
    """Turns an encrypted connection-string password into the real one."""

    @abstractmethod
    def decrypt(self, username: str, secret: str) -> str:
        pass


class FernetSecretDecryptor(SecretDecryptor):
    """Decrypt passwords using Fernet symmetric encryption."""

    def __init__(self, encryption_key: str) -> None:
        self._fernet = Fernet(encryption_key.encode())

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, username: str, secret: str) -> str:
        return self._fernet.decrypt(secret.encode()).decode()
