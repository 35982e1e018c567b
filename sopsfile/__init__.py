"""Encrypted secrets files: AES-GCM values, age and Azure Key Vault master keys, and helpers."""

__version__ = "0.1.0"