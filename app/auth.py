import re
import secrets
from typing import List, Optional
import logging

from app.storage.dynamodb import DynamoDBService
from app.image_service.index_store import IndexStore
from app.settings import settings

log = logging.getLogger(__name__)

API_KEYS_KEY = "api_keys"
_BEARER = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


class AuthService:
    """Flat API key list: keys from settings plus keys stored in the key-value table."""
    def __init__(self, db: DynamoDBService):
        self.store = IndexStore(db)

    def validate_api_key(self, key: Optional[str]) -> bool:
        if not key:
            return False
        if any(secrets.compare_digest(key.encode(), k.encode()) for k in settings.api_keys):
            return True
        return any(secrets.compare_digest(key.encode(), k.encode()) for k in self.list_api_keys())

    def add_api_key(self, key: str):
        self.store.append(API_KEYS_KEY, key)
        log.info("Added API key")

    def list_api_keys(self) -> List[str]:
        return self.store.read_list(API_KEYS_KEY)

    @staticmethod
    def extract_api_key(auth_header: Optional[str]) -> Optional[str]:
        if not auth_header:
            return None
        match = _BEARER.match(auth_header)
        return match.group(1).strip() if match else None
