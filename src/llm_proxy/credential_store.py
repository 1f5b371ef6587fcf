from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from .config import ProxyConfig
from .contracts import ProviderName
from .crypto import decrypt_bytes, encrypt_bytes


@dataclass(frozen=True)
class ProviderCredentials:
    api_keys: dict[str, str] = field(default_factory=dict)

    def get(self, provider: str) -> str | None:
        return self.api_keys.get(provider)


class EncryptedCredentialStore:
    """
    Provider API keys encrypted at rest.

    The file at `path` holds one Fernet token wrapping a JSON object of the
    form ``{"openai": "sk-...", "anthropic": "...", "gemini": "..."}``.
    """

    def __init__(self, path: str, fernet_key: str):
        self.path = Path(path)
        self.fernet_key = fernet_key

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, creds: ProviderCredentials) -> None:
        raw = json.dumps(creds.api_keys).encode("utf-8")
        self.path.write_bytes(encrypt_bytes(self.fernet_key, raw))

    def load(self) -> ProviderCredentials:
        raw = decrypt_bytes(self.fernet_key, self.path.read_bytes())
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("Credential payload must be a JSON object.")
        known = {p.value for p in ProviderName}
        keys = {str(k): str(v) for k, v in payload.items() if k in known and isinstance(v, str) and v}
        return ProviderCredentials(api_keys=keys)


def with_stored_credentials(cfg: ProxyConfig) -> ProxyConfig:
    """Fill provider keys missing from the environment from the encrypted store."""
    if not cfg.credentials_path or not cfg.fernet_key:
        return cfg
    store = EncryptedCredentialStore(cfg.credentials_path, cfg.fernet_key)
    if not store.exists():
        return cfg
    creds = store.load()
    updates = {}
    for provider in ProviderName:
        attr = f"{provider.value}_api_key"
        if not getattr(cfg, attr) and creds.get(provider.value):
            updates[attr] = creds.get(provider.value)
    return cfg.model_copy(update=updates) if updates else cfg
