"""
    Image metadata and its derived indexes.

    Stored keys:
        image:<id>              one ImageRecord
        image_ids               every image id, newest first
        image_ids:<orientation> ids per orientation, newest first
        tag:<name>              ids carrying the tag, most recently tagged first
        tags                    registry of known tag names

    The key-value store has no transactions, so every mutation orders its
    writes such that an id is only ever listed under a classification its
    record already has: records are written before ids are indexed and ids
    are unindexed before records lose the classification. An interrupted
    sequence leaves an under-indexed record at worst; `repair_indexes`
    removes anything left dangling by other means.
"""
import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from app.storage.dynamodb import DynamoDBService
from app.image_service.index_store import (
    IndexStore,
    GLOBAL_KEY,
    REGISTRY_KEY,
    ids_key,
    image_key,
    orientation_key,
    tag_key,
)
from app.image_service.models import ImageRecord, Orientation, TagCount, to_timestamp, utc_now
from app.exceptions import (
    ImageNotFoundException,
    IndexConflictException,
    StorageException,
    TagNotFoundException,
)
from app.settings import settings

log = logging.getLogger(__name__)


class MetadataService:
    def __init__(
        self,
        db: DynamoDBService,
        rng: Optional[random.Random] = None,
        rename_policy: Optional[str] = None,
    ):
        self.store = IndexStore(db)
        self.rng = rng or random.SystemRandom()
        self.rename_policy = rename_policy or settings.tag_rename_policy

    # === Image CRUD ===

    def save_image(self, record: ImageRecord) -> ImageRecord:
        """Persists a new record and indexes it globally, by orientation and by tag."""
        self.store.put(image_key(record.id), record.to_store())
        self.store.prepend(GLOBAL_KEY, record.id)
        self.store.prepend(orientation_key(record.orientation), record.id)
        for tag in record.tags:
            self._add_image_to_tag(tag, record.id)
        log.info("Saved image metadata %s", record.id)
        return record

    def get_image(self, image_id: str) -> Optional[ImageRecord]:
        data = self.store.read(image_key(image_id))
        return ImageRecord.model_validate(data) if data else None

    def update_image(self, image_id: str, updates: Dict[str, Any]) -> ImageRecord:
        """
            Applies a partial update. Supported keys are "tags" and
            "expiry_time"; an expiry_time of None clears the expiry.
            Only tags in the symmetric difference touch a tag index.
        """
        new_tags = list(dict.fromkeys(updates["tags"])) if "tags" in updates else None

        for attempt in range(1, self.store.retries + 1):
            image = self.get_image(image_id)
            if not image:
                raise ImageNotFoundException(image_id)

            removed = [] if new_tags is None else [t for t in image.tags if t not in new_tags]
            for tag in removed:
                self._remove_image_from_tag(tag, image_id)

            before: List[str] = []

            def merge(current):
                if current is None:
                    raise ImageNotFoundException(image_id)
                merged = ImageRecord.model_validate(current)
                before[:] = merged.tags
                if new_tags is not None:
                    if any(t not in new_tags and t not in removed for t in merged.tags):
                        # tagged since our read and possibly indexed already
                        return current
                    merged.tags = new_tags
                if "expiry_time" in updates:
                    merged.expiry_time = updates["expiry_time"]
                return merged.to_store()

            updated = ImageRecord.model_validate(self.store.mutate(image_key(image_id), merge))
            if new_tags is not None and updated.tags != new_tags:
                log.info("Image %s was retagged concurrently (attempt %d/%d)", image_id, attempt, self.store.retries)
                continue

            added = [] if new_tags is None else [t for t in new_tags if t not in before]
            for tag in added:
                self._add_image_to_tag(tag, image_id)

            log.debug("Updated image %s (+%s -%s)", image_id, added, removed)
            return updated

        raise IndexConflictException(image_key(image_id))

    def delete_image(self, image_id: str) -> ImageRecord:
        """Unindexes the image everywhere, then deletes its record."""
        image = self.get_image(image_id)
        if not image:
            raise ImageNotFoundException(image_id)

        for tag in image.tags:
            self._remove_image_from_tag(tag, image_id)
        self.store.remove(orientation_key(image.orientation), image_id)
        self.store.remove(GLOBAL_KEY, image_id)
        self.store.delete(image_key(image_id))

        log.info("Deleted image metadata %s", image_id)
        return image

    # === Image Queries ===

    def get_image_ids(self, orientation: Optional[str] = None) -> List[str]:
        return self.store.read_list(ids_key(orientation))

    def get_tag_image_ids(self, tag: str) -> List[str]:
        return self.store.read_list(tag_key(tag))

    def list_images(
        self,
        page: int = 1,
        limit: int = 12,
        tag: Optional[str] = None,
        orientation: Optional[str] = None,
    ) -> Tuple[List[ImageRecord], int]:
        """Returns one page of records and the size of the whole candidate set."""
        if tag:
            ids = self.get_tag_image_ids(tag)
            if orientation:
                orientation_ids = set(self.get_image_ids(orientation))
                ids = [i for i in ids if i in orientation_ids]
        elif orientation:
            ids = self.get_image_ids(orientation)
        else:
            ids = self.get_image_ids()

        total = len(ids)
        start = (page - 1) * limit
        images = []
        for image_id in ids[start:start + limit]:
            image = self.get_image(image_id)
            if image is None:
                log.warning("Index entry %s has no record", image_id)
                continue
            images.append(image)
        return images, total

    def get_random_image(
        self,
        tags: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
        orientation: Optional[str] = None,
    ) -> Optional[ImageRecord]:
        """
            Picks uniformly among images that match the orientation, carry
            every tag in `tags` and none of the tags in `exclude`.
        """
        ids = self.get_image_ids(orientation)

        for tag in tags or []:
            tag_ids = set(self.get_tag_image_ids(tag))
            ids = [i for i in ids if i in tag_ids]

        for tag in exclude or []:
            excluded = set(self.get_tag_image_ids(tag))
            ids = [i for i in ids if i not in excluded]

        while ids:
            image_id = self.rng.choice(ids)
            image = self.get_image(image_id)
            if image is not None:
                return image
            log.warning("Random pick %s has no record", image_id)
            ids = [i for i in ids if i != image_id]
        return None

    def get_expired_images(self, now: Optional[Union[str, datetime]] = None) -> List[ImageRecord]:
        if now is None:
            now = utc_now()
        elif isinstance(now, datetime):
            now = to_timestamp(now)

        expired = []
        for image_id in self.get_image_ids():
            image = self.get_image(image_id)
            if image and image.expiry_time and image.expiry_time < now:
                expired.append(image)
        return expired

    # === Tag Management ===

    def get_all_tag_names(self) -> List[str]:
        return self.store.read_list(REGISTRY_KEY)

    def get_all_tags(self) -> List[TagCount]:
        return [
            TagCount(name=name, count=len(self.get_tag_image_ids(name)))
            for name in self.get_all_tag_names()
        ]

    def create_tag(self, name: str) -> bool:
        """Registers a tag; returns False if it was already registered."""
        if name in self.get_all_tag_names():
            return False
        self.store.ensure_list(tag_key(name))
        self.store.append(REGISTRY_KEY, name)
        log.info("Created tag %s", name)
        return True

    def rename_tag(self, old_name: str, new_name: str) -> int:
        """
            Moves every image from old_name to new_name and returns how many
            images were affected.

            With the default "overwrite" policy the new tag's index becomes
            exactly the old tag's index, so images that only carried new_name
            drop out of it while their records still list the tag. The
            "merge" policy keeps them.
        """
        if old_name not in self.get_all_tag_names():
            raise TagNotFoundException(old_name)
        if old_name == new_name:
            return len(self.get_tag_image_ids(old_name))

        image_ids = self.get_tag_image_ids(old_name)

        def add_new(tags):
            if new_name in tags:
                return tags
            pos = tags.index(old_name) + 1 if old_name in tags else len(tags)
            return tags[:pos] + [new_name] + tags[pos:]

        for image_id in image_ids:
            self._rewrite_tags(image_id, add_new)

        if self.rename_policy == "merge":
            existing = self.get_tag_image_ids(new_name)
            self.store.write_list(tag_key(new_name), image_ids + [i for i in existing if i not in image_ids])
        else:
            self.store.write_list(tag_key(new_name), image_ids)
        self.store.delete_list(tag_key(old_name))

        for image_id in image_ids:
            self._rewrite_tags(image_id, lambda tags: [t for t in tags if t != old_name])

        self.store.replace(REGISTRY_KEY, old_name, new_name)
        log.info("Renamed tag %s to %s (%d images)", old_name, new_name, len(image_ids))
        return len(image_ids)

    def delete_tag(self, name: str) -> int:
        """Removes the tag from every image and from the registry."""
        if name not in self.get_all_tag_names():
            raise TagNotFoundException(name)

        image_ids = self.get_tag_image_ids(name)
        self.store.delete_list(tag_key(name))
        for image_id in image_ids:
            self._rewrite_tags(image_id, lambda tags: [t for t in tags if t != name])
        self.store.remove(REGISTRY_KEY, name)

        log.info("Deleted tag %s (%d images)", name, len(image_ids))
        return len(image_ids)

    def batch_update_tags(
        self, image_ids: List[str], add_tags: List[str], remove_tags: List[str]
    ) -> Tuple[int, int]:
        """Returns (updated, failed); a failing image does not stop the batch."""
        updated_count = failed_count = 0
        for image_id in image_ids:
            try:
                image = self.get_image(image_id)
                if not image:
                    log.debug("Batch tag update skipped missing image %s", image_id)
                    continue

                tags = [t for t in image.tags if t not in remove_tags]
                tags += [t for t in add_tags if t not in tags]
                self.update_image(image_id, {"tags": tags})
            except ImageNotFoundException:
                # deleted between read and write
                continue
            except StorageException as e:
                failed_count += 1
                log.error(f"Batch tag update failed for image {image_id}: {e.detail}")
                continue
            updated_count += 1
        return updated_count, failed_count

    # === Consistency ===

    def repair_indexes(self) -> int:
        """Drops index entries whose record is missing or no longer matches."""
        removed = 0

        def prune(key: str, keep: Callable[[ImageRecord], bool]):
            nonlocal removed

            def stale(image_id):
                # re-read on every write attempt so a concurrent tag is seen
                image = self.get_image(image_id)
                return image is None or not keep(image)

            count = self.store.discard(key, stale)
            if count:
                removed += count
                log.warning("Removed %d dangling entries from %s", count, key)

        prune(GLOBAL_KEY, lambda image: True)
        for orientation in Orientation:
            prune(orientation_key(orientation.value), lambda image, o=orientation.value: image.orientation == o)
        for name in self.get_all_tag_names():
            prune(tag_key(name), lambda image, n=name: n in image.tags)
        return removed

    # === Private Helper Methods ===

    def _add_image_to_tag(self, tag: str, image_id: str):
        self.create_tag(tag)
        self.store.prepend(tag_key(tag), image_id)
        image = self.get_image(image_id)
        if image is None or tag not in image.tags:
            # untagged or deleted while we were indexing
            self._remove_image_from_tag(tag, image_id)

    def _remove_image_from_tag(self, tag: str, image_id: str):
        self.store.remove(tag_key(tag), image_id)

    def _rewrite_tags(self, image_id: str, fn: Callable[[List[str]], List[str]]) -> bool:
        """Rewrites one record's tag list; returns False if the record is gone."""
        def apply(current):
            if current is None:
                return None
            record = ImageRecord.model_validate(current)
            record.tags = fn(list(record.tags))
            return record.to_store()

        return self.store.mutate(image_key(image_id), apply) is not None
