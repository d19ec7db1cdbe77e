import json
import logging
import os
from typing import Dict, Optional

from abmate.config import CONFIG
from abmate.errors import InvalidKeyFormat
from abmate.models import ServiceCredentials

logger = logging.getLogger("abmate.credentials")


class CredentialStore:
    """
    Remembers the client id and key id between runs.
    The private key is never written here.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or CONFIG.get("CREDENTIALS_FILE")

    def load(self) -> Dict[str, str]:
        if not self.path or not os.path.exists(self.path):
            return {"client_id": "", "key_id": ""}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f) or {}
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️  Could not read saved credentials ({self.path}): {e}")
            return {"client_id": "", "key_id": ""}
        return {
            "client_id": str(raw.get("client_id") or ""),
            "key_id": str(raw.get("key_id") or ""),
        }

    def save(self, client_id: str, key_id: str) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({"client_id": client_id, "key_id": key_id}, f, indent=2)
        logger.debug(f"Saved client/key id to {self.path}")


def load_private_key(path: Optional[str] = None) -> str:
    """
    Reads the PEM text from a file, falling back to the inline
    ABMATE_PRIVATE_KEY value (env or AWS Secrets Manager).
    """
    path = path or CONFIG.get("ABM_PRIVATE_KEY_PATH")
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            raise InvalidKeyFormat(f"Could not read private key file {path}: {e}") from e

    inline = CONFIG.get("ABM_PRIVATE_KEY")
    if inline:
        # Secrets stored as one line often carry literal "\n" sequences.
        return inline.replace("\\n", "\n")

    raise InvalidKeyFormat("No private key configured (ABMATE_PRIVATE_KEY_PATH or ABMATE_PRIVATE_KEY).")


def resolve_credentials(
    client_id: Optional[str] = None,
    key_id: Optional[str] = None,
    private_key_path: Optional[str] = None,
    store: Optional[CredentialStore] = None,
) -> ServiceCredentials:
    """Explicit arguments win, then config, then the saved store."""
    saved = (store or CredentialStore()).load()
    resolved_client = client_id or CONFIG.get("ABM_CLIENT_ID") or saved["client_id"]
    resolved_key = key_id or CONFIG.get("ABM_KEY_ID") or saved["key_id"]

    missing = [name for name, value in (("client_id", resolved_client), ("key_id", resolved_key)) if not value]
    if missing:
        raise ValueError(f"Missing credentials: {', '.join(missing)}")

    return ServiceCredentials(
        client_id=resolved_client,
        key_id=resolved_key,
        private_key_pem=load_private_key(private_key_path),
    )
