"""
Note signing key
Loads or generates the persisted Nostr key and signs annotation events with nostr-sdk
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

from nostr_sdk import EventBuilder, Keys, Kind, Tag

from config import config
from errors import NotAuthenticatedError

logger = logging.getLogger(__name__)


class NoteSigner:
    """A key that exists and can sign"""

    def __init__(self, keys: Keys):
        self.keys = keys

    @classmethod
    def load_or_create(cls, path: Optional[str] = None) -> "NoteSigner":
        """
        Read the nsec stored at path, generating and persisting one on first use

        Raises NotAuthenticatedError when no key can be read or written.
        """
        path = path or config.NOSTR_KEY_PATH
        try:
            if os.path.exists(path):
                with open(path, "r", encoding="utf-8") as f:
                    keys = Keys.parse(f.read().strip())
                logger.info(f"Loaded signing key from {path}")
                return cls(keys)

            keys = Keys.generate()
            with open(path, "w", encoding="utf-8") as f:
                f.write(keys.secret_key().to_bech32())
            os.chmod(path, 0o600)
            logger.info(f"Generated signing key at {path}")
            return cls(keys)
        except OSError as e:
            raise NotAuthenticatedError(f"Signing key unavailable at {path}: {e}") from e
        except Exception as e:
            # nostr-sdk raises its own error type for malformed keys
            raise NotAuthenticatedError(f"Invalid signing key at {path}: {e}") from e

    @property
    def pubkey(self) -> str:
        return self.keys.public_key().to_hex()

    def sign(self, kind: int, content: str, tags: List[List[str]]) -> Dict[str, Any]:
        """Signed NIP-01 event as a dict"""
        builder = EventBuilder(Kind(kind), content).tags([Tag.parse(tag) for tag in tags])
        event = builder.sign_with_keys(self.keys)
        return json.loads(event.as_json())
