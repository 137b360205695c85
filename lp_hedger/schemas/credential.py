"""Pydantic schemas for Credential input."""

import re

from pydantic import BaseModel, Field, field_validator

_HEX_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class CredentialCreate(BaseModel):
    name: str = Field(default="default", min_length=1, max_length=120)
    account_address: str | None = None  # Defaults to the key's own address
    private_key: str  # Raw hex private key, encrypted before storage

    @field_validator("name")
    @classmethod
    def _trim_name(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("account_address")
    @classmethod
    def _validate_address(cls, value: str | None) -> str | None:
        if value is None:
            return None
        address = value.strip()
        if not _ADDRESS_RE.fullmatch(address):
            raise ValueError("must be a 0x-prefixed 20-byte hex address")
        return address

    @field_validator("private_key")
    @classmethod
    def _validate_private_key(cls, value: str) -> str:
        key = value.strip()
        if not key:
            raise ValueError("must not be empty")
        if not _HEX_KEY_RE.fullmatch(key):
            raise ValueError("must be a 64-char hex string, with optional 0x prefix")
        return key


class WalletCreate(BaseModel):
    address: str
    network: str = "arbitrum"
    label: str | None = Field(default=None, max_length=120)

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        address = value.strip()
        if not _ADDRESS_RE.fullmatch(address):
            raise ValueError("must be a 0x-prefixed 20-byte hex address")
        return address.lower()

    @field_validator("network")
    @classmethod
    def _validate_network(cls, value: str) -> str:
        from lp_hedger.utils.constants import SUPPORTED_NETWORKS

        if value not in SUPPORTED_NETWORKS:
            raise ValueError(f"must be one of: {', '.join(SUPPORTED_NETWORKS)}")
        return value
