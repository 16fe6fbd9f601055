from .broker import CredentialBroker, Credentials, ScopedClients

__all__ = ["CredentialBroker", "Credentials", "ScopedClients"]
