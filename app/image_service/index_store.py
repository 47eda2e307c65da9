"""
    Versioned key-value primitives the metadata service is built on.

    Every stored value is rewritten through `mutate`, which re-reads the item,
    applies a pure function and writes the result conditionally on the version
    it read. A concurrent writer makes the put fail and the whole
    read-modify-write is retried, so no update to a single key is ever lost.
    Updates spanning several keys are still not atomic.

    Index lists outgrow a single DynamoDB item (400 KB, about 10k ids), so a
    list is stored as a head item plus pages:

        <key>       {"pages": [page numbers, first to last], "next": n}
        <key>#<n>   up to `page_size` ids

    New items go into the first page (prepend) or the last page (append); a
    full or missing end page makes the writer allocate a fresh one. Emptied
    middle pages are deleted and dropped from the head. The first and last
    pages are never dropped.
"""
from typing import Any, Callable, Dict, List, Optional
import logging
from botocore.exceptions import BotoCoreError, ClientError

from app.storage.dynamodb import DynamoDBService, WriteConflict
from app.exceptions import DynamoDBException, IndexConflictException
from app.settings import settings

log = logging.getLogger(__name__)

GLOBAL_KEY = "image_ids"
REGISTRY_KEY = "tags"

def image_key(image_id: str) -> str:
    return f"image:{image_id}"

def orientation_key(orientation: str) -> str:
    return f"image_ids:{orientation}"

def tag_key(name: str) -> str:
    return f"tag:{name}"

def ids_key(orientation: Optional[str] = None) -> str:
    return orientation_key(orientation) if orientation else GLOBAL_KEY

def page_key(key: str, page: int) -> str:
    return f"{key}#{page}"

def _empty_head() -> Dict[str, Any]:
    return {"pages": [], "next": 0}


class IndexStore:
    def __init__(self, db: DynamoDBService, retries: Optional[int] = None, page_size: Optional[int] = None):
        self.db = db
        self.retries = retries or settings.index_write_retries
        self.page_size = page_size or settings.index_page_size

    def read(self, key: str) -> Optional[Any]:
        try:
            found = self.db.get(key)
        except (BotoCoreError, ClientError) as e:
            log.error(f"DynamoDB get {key} failed: {e}")
            raise DynamoDBException(f"Failed to read '{key}': {e}")
        return found[0] if found else None

    def mutate(self, key: str, fn: Callable[[Optional[Any]], Optional[Any]]) -> Optional[Any]:
        """
            Applies fn to the current value of key and stores the result.
            fn must not modify its argument; returning None deletes the key and
            returning an equal value skips the write.
        """
        for attempt in range(1, self.retries + 1):
            try:
                found = self.db.get(key)
                current, version = found if found else (None, None)
                updated = fn(current)
                if updated == current:
                    return current
                if updated is None:
                    self.db.delete(key, expected_version=version)
                else:
                    self.db.put(key, updated, expected_version=version)
                return updated
            except WriteConflict:
                log.info("Write conflict on %s (attempt %d/%d)", key, attempt, self.retries)
            except (BotoCoreError, ClientError) as e:
                log.error(f"DynamoDB write {key} failed: {e}")
                raise DynamoDBException(f"Failed to write '{key}': {e}")
        raise IndexConflictException(key)

    def put(self, key: str, value: Any) -> Any:
        return self.mutate(key, lambda _: value)

    def delete(self, key: str):
        self.mutate(key, lambda _: None)

    # === Paged lists ===

    def read_list(self, key: str) -> List[str]:
        items: List[str] = []
        for page in self._pages(key):
            items.extend(self.read(page_key(key, page)) or [])
        # an id re-added while another writer allocated a page can appear twice
        return list(dict.fromkeys(items))

    def ensure_list(self, key: str):
        """Creates an empty list under key unless one exists."""
        self.mutate(key, lambda head: head or _empty_head())

    def prepend(self, key: str, item: str):
        """Adds item at the front of the list; a no-op if the first page has it."""
        self._add(key, item, front=True)

    def append(self, key: str, item: str):
        self._add(key, item, front=False)

    def remove(self, key: str, item: str) -> int:
        return self.discard(key, lambda i: i == item)

    def discard(self, key: str, drop: Callable[[str], bool]) -> int:
        """
            Removes every item for which drop(item) is true and returns how
            many were removed. drop runs inside the conditional write, so it
            sees the page as it is when written.
        """
        pages = self._pages(key)
        removed = 0
        for page in pages:
            dropped: List[str] = []

            def keep(ids, dropped=dropped):
                dropped.clear()
                if ids is None:
                    return None
                kept = []
                for i in ids:
                    (dropped if drop(i) else kept).append(i)
                return kept

            self.mutate(page_key(key, page), keep)
            removed += len(dropped)
            if dropped and page not in (pages[0], pages[-1]):
                self._drop_page_if_empty(key, page)
        return removed

    def replace(self, key: str, old: str, new: str):
        """Renames old to new in place; drops old when new is already listed."""
        if new in self.read_list(key):
            self.remove(key, old)
            return
        for page in self._pages(key):
            self.mutate(page_key(key, page), lambda ids: None if ids is None else [new if i == old else i for i in ids])

    def write_list(self, key: str, items: List[str]):
        """
            Replaces the whole list. New pages are written before the head
            points at them and old pages are deleted after.
        """
        chunks = [items[i:i + self.page_size] for i in range(0, len(items), self.page_size)]
        reserved = self.mutate(key, lambda head: self._reserve(head, len(chunks)))
        first = reserved["next"] - len(chunks)
        new_pages = list(range(first, first + len(chunks)))
        for page, chunk in zip(new_pages, chunks):
            self.put(page_key(key, page), chunk)

        replaced: List[int] = []

        def swap(head):
            head = head or reserved
            replaced[:] = head["pages"]
            return {"pages": new_pages, "next": head["next"]}

        self.mutate(key, swap)
        for page in replaced:
            if page not in new_pages:
                self.delete(page_key(key, page))

    def delete_list(self, key: str):
        pages: List[int] = []

        def drop(head):
            pages[:] = head["pages"] if head else []
            return None

        self.mutate(key, drop)
        for page in pages:
            self.delete(page_key(key, page))

    def _pages(self, key: str) -> List[int]:
        head = self.read(key)
        return head["pages"] if head else []

    def _add(self, key: str, item: str, front: bool):
        def add(ids, create=False):
            if ids is None:
                return [item] if create else None
            if item in ids or len(ids) >= self.page_size:
                return ids
            return [item] + ids if front else ids + [item]

        pages = self._pages(key)
        if pages:
            ids = self.mutate(page_key(key, pages[0] if front else pages[-1]), add)
            if ids is not None and item in ids:
                return

        head = self.mutate(key, lambda head: self._grow(head, front))
        page = head["pages"][0] if front else head["pages"][-1]
        self.mutate(page_key(key, page), lambda ids: add(ids, create=True))
        log.debug("Allocated page %d of %s", page, key)

    def _drop_page_if_empty(self, key: str, page: int):
        pkey = page_key(key, page)
        try:
            found = self.db.get(pkey)
            if not found or found[0]:
                return
            self.db.delete(pkey, expected_version=found[1])
        except WriteConflict:
            # written to since we emptied it, so it stays
            return
        except (BotoCoreError, ClientError) as e:
            log.error(f"DynamoDB delete {pkey} failed: {e}")
            raise DynamoDBException(f"Failed to delete '{pkey}': {e}")
        self.mutate(key, lambda head: head and {**head, "pages": [p for p in head["pages"] if p != page]})

    @staticmethod
    def _grow(head: Optional[Dict[str, Any]], front: bool) -> Dict[str, Any]:
        head = head or _empty_head()
        page = head["next"]
        pages = [page] + head["pages"] if front else head["pages"] + [page]
        return {"pages": pages, "next": page + 1}

    @staticmethod
    def _reserve(head: Optional[Dict[str, Any]], count: int) -> Dict[str, Any]:
        head = head or _empty_head()
        return {"pages": head["pages"], "next": head["next"] + count}
