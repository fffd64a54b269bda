"""Favorites, recent and collection indices.

Each index is a JSON record in the :class:`~PresetLibrary.core.database.MetadataTable`
and refers to presets by id only. An id in an index is a lookup, never ownership:
readers resolve ids against the metadata table and skip the ones that no longer exist.

The indices are synchronous and are not safe to mutate concurrently; the repository
serializes every read-modify-write behind its writer lock.
"""
import logging
from typing import Iterable, List, Optional

from .database import MetadataTable
from .model import PresetCollection, generate_id, now_str, parse_timestamp
from ..settings import lib
from ..settings.lib import StorageKey


def _id_list(value, key: str) -> List[str]:
    if not isinstance(value, list):
        logging.warning(f'Record "{key}" is not a list, treating it as empty')
        return []
    return [str(v) for v in value]


class FavoritesIndex:
    """Ordered set of favorite preset ids."""

    def __init__(self, table: MetadataTable) -> None:
        self.table = table

    def ids(self) -> List[str]:
        return _id_list(self.table.get_record(StorageKey.Favorites, []), StorageKey.Favorites)

    def contains(self, preset_id: str) -> bool:
        return preset_id in self.ids()

    def add(self, preset_id: str) -> bool:
        """Append an id. Returns False if it was already a member."""
        ids = self.ids()
        if preset_id in ids:
            return False
        ids.append(preset_id)
        self.table.set_record(StorageKey.Favorites, ids)
        return True

    def remove(self, preset_id: str) -> bool:
        """Remove an id. Returns False if it was not a member."""
        ids = self.ids()
        if preset_id not in ids:
            return False
        self.table.set_record(StorageKey.Favorites, [i for i in ids if i != preset_id])
        return True

    def replace(self, ids: Iterable[str]) -> None:
        self.table.set_record(StorageKey.Favorites, list(dict.fromkeys(ids)))


class RecentIndex:
    """Bounded, de-duplicated list of preset ids, most recently touched first."""

    def __init__(self, table: MetadataTable, max_size: int = lib.MAX_RECENT) -> None:
        self.table = table
        self.max_size = max_size

    def ids(self, limit: Optional[int] = None) -> List[str]:
        ids = _id_list(self.table.get_record(StorageKey.Recent, []), StorageKey.Recent)
        if limit is None:
            return ids
        return ids[:max(limit, 0)]

    def touch(self, preset_id: str) -> None:
        """Move ``preset_id`` to the front, dropping the oldest ids beyond the bound."""
        ids = [i for i in self.ids() if i != preset_id]
        ids.insert(0, preset_id)
        self.table.set_record(StorageKey.Recent, ids[:self.max_size])

    def remove(self, preset_id: str) -> bool:
        ids = self.ids()
        if preset_id not in ids:
            return False
        self.table.set_record(StorageKey.Recent, [i for i in ids if i != preset_id])
        return True

    def replace(self, ids: Iterable[str]) -> None:
        self.table.set_record(StorageKey.Recent, list(dict.fromkeys(ids))[:self.max_size])


class CollectionIndex:
    """Named groups of preset ids, keyed by collection id."""

    def __init__(self, table: MetadataTable) -> None:
        self.table = table

    def _load(self) -> dict:
        data = self.table.get_record(StorageKey.Collections, {})
        if not isinstance(data, dict):
            logging.warning(f'Record "{StorageKey.Collections}" is not a mapping, treating it as empty')
            return {}
        return data

    def _save(self, data: dict) -> None:
        self.table.set_record(StorageKey.Collections, data)

    def get(self, collection_id: str) -> Optional[PresetCollection]:
        data = self._load().get(collection_id)
        if data is None:
            return None
        return PresetCollection.from_dict(data)

    def all(self) -> List[PresetCollection]:
        """Return every collection, newest first. Ties put the last created first."""
        collections = [PresetCollection.from_dict(v) for v in self._load().values()]
        return sorted(reversed(collections), key=lambda c: parse_timestamp(c.created_at), reverse=True)

    def create(self, name: str, initial_ids: Iterable[str] = ()) -> PresetCollection:
        collection = PresetCollection(
            id=generate_id('collection'),
            name=name,
            preset_ids=list(dict.fromkeys(initial_ids)),
            created_at=now_str(),
        )
        data = self._load()
        data[collection.id] = collection.to_dict()
        self._save(data)
        return collection

    def add(self, collection_id: str, preset_id: str) -> bool:
        """Append a preset id to a collection.

        The id is not checked against the metadata table.

        Returns:
            bool: False if the collection does not exist, True otherwise.
        """
        data = self._load()
        if collection_id not in data:
            return False
        ids = data[collection_id].setdefault('presetIds', [])
        if preset_id not in ids:
            ids.append(preset_id)
            self._save(data)
        return True

    def remove_preset(self, collection_id: str, preset_id: str) -> bool:
        data = self._load()
        if collection_id not in data:
            return False
        ids = data[collection_id].get('presetIds', [])
        if preset_id in ids:
            data[collection_id]['presetIds'] = [i for i in ids if i != preset_id]
            self._save(data)
        return True

    def rename(self, collection_id: str, name: str) -> bool:
        data = self._load()
        if collection_id not in data:
            return False
        data[collection_id]['name'] = name
        self._save(data)
        return True

    def delete(self, collection_id: str) -> bool:
        data = self._load()
        if data.pop(collection_id, None) is None:
            return False
        self._save(data)
        return True
