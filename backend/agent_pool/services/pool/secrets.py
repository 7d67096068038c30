"""Locally generated per-instance secrets."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass

_ID_ALPHABET = string.ascii_lowercase + string.digits
INSTANCE_ID_LENGTH = 12


def generate_instance_id() -> str:
    # Lowercase alphanumerics only: ids are embedded in provider-side names.
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(INSTANCE_ID_LENGTH))


def generate_gateway_token() -> str:
    return secrets.token_hex(32)


def generate_setup_password() -> str:
    return secrets.token_hex(16)


def generate_wallet_key() -> str:
    return f"0x{secrets.token_hex(32)}"


@dataclass(frozen=True)
class InstanceSecrets:
    gateway_token: str
    setup_password: str
    wallet_key: str

    @classmethod
    def generate(cls) -> InstanceSecrets:
        return cls(
            gateway_token=generate_gateway_token(),
            setup_password=generate_setup_password(),
            wallet_key=generate_wallet_key(),
        )

    def env(self) -> dict[str, str]:
        return {
            "OPENCLAW_GATEWAY_TOKEN": self.gateway_token,
            "SETUP_PASSWORD": self.setup_password,
            "PRIVATE_WALLET_KEY": self.wallet_key,
        }
