"""Asynchronous repository facade for preset storage.

:class:`PresetRepository` is the single entry point for reading and writing presets.
It composes the content blob store, the metadata table and the favorites, recent and
collection indices, and keeps them consistent across save, delete, duplicate, import,
export and share.

Concurrency:
    Every operation is a coroutine. Blob and database instructions run on one worker
    thread per store, so no two store instructions ever execute at the same time, and
    every read-modify-write of the metadata table or an index is serialized behind a
    single writer lock. Two overlapping saves can therefore not lose each other's
    changes.

Consistency:
    Content is written before metadata. When the metadata write fails, the content
    write is rolled back (previous content restored, or the new blob removed). If the
    rollback fails too, the id is kept in :attr:`PresetRepository.orphans` until
    :meth:`PresetRepository.reconcile` sweeps it.

Errors:
    Public operations never raise. Failures return a sentinel (``None``, ``False`` or an
    empty list), are logged, emitted through ``signals.error`` and recorded in
    :attr:`PresetRepository.last_status`.
"""
import asyncio
import functools
import json
import logging
import pathlib
import re
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Set, Union

from .blobstore import BlobStore, check_id
from .database import MetadataTable, sort_by_modified
from .indices import CollectionIndex, FavoritesIndex, RecentIndex
from .model import (
    Preset,
    PresetCollection,
    PresetMetadata,
    PresetType,
    generate_id,
    now_str,
    parse_timestamp,
)
from .share import DesktopShareSurface, ShareSurface
from .signals import signals
from ..settings import lib
from ..status import status

IMPORTED_AUTHOR = 'Imported'
IMPORTED_TAG = 'imported'
COPY_SUFFIX = ' (Copy)'
DEFAULT_EXPORT_NAME = 'preset'


def sanitize_filename(name: str) -> str:
    """Strip every character outside ``[A-Za-z0-9]`` from a preset name.

    Returns ``'preset'`` when nothing is left.
    """
    return re.sub(r'[^A-Za-z0-9]', '', name) or DEFAULT_EXPORT_NAME


def _read_text(path: pathlib.Path) -> str:
    return path.read_text(encoding='utf-8')


def _write_text(path: pathlib.Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding='utf-8')


def _latest(*timestamps: Optional[str]) -> str:
    """Return the latest of the given ISO 8601 timestamps."""
    return max((t for t in timestamps if t), key=parse_timestamp)


def reports_failure(default: Any, action: str) -> Callable:
    """Decorator turning a repository coroutine into a total function.

    Status exceptions, I/O errors and decoding errors are logged, recorded in
    ``last_status`` and replaced by ``default`` (called first when it is callable).

    Args:
        default: The value returned on failure, or a factory for it.
        action: Describes the operation in log messages, e.g. ``'save preset'``.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(self: 'PresetRepository', *args: Any, **kwargs: Any) -> Any:
            try:
                result = await func(self, *args, **kwargs)
            except status.BaseStatusException as ex:
                self.last_status = ex.status
                logging.warning(f'Failed to {action}: {ex}')
            except (OSError, sqlite3.Error) as ex:
                self.last_status = status.Status.IOFailure
                logging.error(f'Failed to {action}: {ex}')
                signals.error.emit(f'Failed to {action}: {ex}')
            except (KeyError, TypeError, ValueError, json.JSONDecodeError) as ex:
                self.last_status = status.Status.SerializationFailure
                logging.error(f'Failed to {action}: {ex!r}')
                signals.error.emit(f'Failed to {action}: {ex!r}')
            else:
                self.last_status = status.Status.Okay
                return result
            return default() if callable(default) else default

        return wrapper

    return decorator


@dataclass
class ReconcileReport:
    """Outcome of a :meth:`PresetRepository.reconcile` sweep."""
    removed_blobs: List[str] = field(default_factory=list)
    missing_content: List[str] = field(default_factory=list)
    repaired_favorites: List[str] = field(default_factory=list)
    stale_favorites: List[str] = field(default_factory=list)
    stale_recent: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not any((
            self.removed_blobs,
            self.missing_content,
            self.repaired_favorites,
            self.stale_favorites,
            self.stale_recent,
        ))


class PresetRepository:
    """Preset storage facade composing the blob store, metadata table and indices.

    Construct it with explicit stores, or use :meth:`open` for the default
    file and SQLite backed instance.
    """

    def __init__(
            self,
            blobs: BlobStore,
            table: MetadataTable,
            exports_dir: Union[str, pathlib.Path],
            share_surface: Optional[ShareSurface] = None,
            max_recent: int = lib.MAX_RECENT,
    ) -> None:
        self.blobs = blobs
        self.table = table
        self.exports_dir = pathlib.Path(exports_dir)
        self.share_surface: ShareSurface = share_surface or DesktopShareSurface()

        self.favorites = FavoritesIndex(table)
        self.recent = RecentIndex(table, max_size=max_recent)
        self.collections = CollectionIndex(table)

        self.last_status: status.Status = status.Status.Okay
        self.orphans: Set[str] = set()

        self._db_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='PresetLibrary-db')
        self._blob_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='PresetLibrary-blobs')
        self._write_lock = asyncio.Lock()

    @classmethod
    def open(cls, paths: Optional[lib.ConfigPaths] = None,
             share_surface: Optional[ShareSurface] = None) -> 'PresetRepository':
        """Create a repository over the application's preset directory and database.

        Args:
            paths: Application paths. Defaults to the user's app data location.
            share_surface: Share surface. Defaults to the desktop share surface.
        """
        paths = paths or lib.ConfigPaths()
        logging.debug(f'Opening preset repository at {paths.app_data_dir}')
        return cls(
            BlobStore(paths.presets_dir),
            MetadataTable(paths.db_path),
            paths.exports_dir,
            share_surface=share_surface,
        )

    def __repr__(self) -> str:
        return f'<PresetRepository blobs={self.blobs!r}, table={self.table!r}>'

    async def __aenter__(self) -> 'PresetRepository':
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Stop the store workers and close the database connection."""
        self._blob_executor.shutdown(wait=True)
        self._db_executor.shutdown(wait=True)
        self.table.close()

    async def _db(self, func: Callable, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._db_executor, functools.partial(func, *args))

    async def _blob(self, func: Callable, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._blob_executor, functools.partial(func, *args))

    def _resolve(self, ids: Iterable[str]) -> List[Preset]:
        """Look up ids in the metadata table, skipping ids without an entry."""
        presets = []
        for preset_id in ids:
            preset = self.table.get(preset_id)
            if preset is None:
                logging.debug(f'Skipping stale reference to preset "{preset_id}"')
                continue
            presets.append(preset)
        return presets

    # Presets

    @reports_failure(False, 'save preset')
    async def save(self, preset: Preset) -> bool:
        """Write a preset's content and metadata.

        ``modified_at`` is refreshed, ``created_at`` of an existing entry is kept, and the
        favorites index follows ``metadata.is_favorite``.

        Returns:
            bool: True on success.
        """
        await self._save(preset)
        return True

    async def _save(self, preset: Preset) -> None:
        if not preset.id:
            raise status.InvalidPresetException('Preset id must not be empty.')
        check_id(preset.id)

        async with self._write_lock:
            previous = await self._db(self.table.get, preset.id)
            previous_content = None
            if previous is not None and await self._blob(self.blobs.exists, previous.id, previous.type):
                previous_content = await self._blob(self.blobs.read, previous.id, previous.type)

            await self._blob(self.blobs.write, preset.id, preset.type, preset.content)

            stored = preset.copy()
            stored.content = ''
            stored.metadata.modified_at = _latest(
                now_str(),
                preset.metadata.modified_at,
                previous.metadata.modified_at if previous else None,
            )
            if previous is not None:
                stored.metadata.created_at = previous.metadata.created_at

            try:
                await self._db(self._commit_metadata, stored)
            except Exception:
                await self._rollback_content(preset, previous, previous_content)
                raise

            # A dialect change leaves the old content under the old extension
            if previous is not None and previous.type != preset.type:
                try:
                    await self._blob(self.blobs.delete, previous.id, previous.type)
                except status.IOFailureException:
                    self.orphans.add(previous.id)

        preset.metadata.modified_at = stored.metadata.modified_at
        preset.metadata.created_at = stored.metadata.created_at
        logging.debug(f'Saved preset "{preset.id}" ({preset.name})')
        signals.presetSaved.emit(preset.id)

    def _commit_metadata(self, stored: Preset) -> None:
        with self.table.transaction():
            self.table.put(stored)
            if stored.metadata.is_favorite:
                self.favorites.add(stored.id)
            else:
                self.favorites.remove(stored.id)

    async def _rollback_content(self, preset: Preset, previous: Optional[Preset],
                                previous_content: Optional[str]) -> None:
        """Undo a content write whose metadata write failed."""
        try:
            if previous_content is not None and previous.type == preset.type:
                await self._blob(self.blobs.write, preset.id, preset.type, previous_content)
                logging.warning(f'Restored previous content of preset "{preset.id}"')
            else:
                await self._blob(self.blobs.delete, preset.id, preset.type)
                logging.warning(f'Removed content of unsaved preset "{preset.id}"')
        except (status.IOFailureException, OSError) as ex:
            logging.error(f'Rollback failed, preset "{preset.id}" is orphaned: {ex}')
            self.orphans.add(preset.id)

    @reports_failure(None, 'load preset')
    async def load(self, preset_id: str) -> Optional[Preset]:
        """Return the preset with its content, or None.

        A preset whose metadata exists but whose content is missing fails with
        ``Status.IOFailure`` rather than returning empty content.
        """
        return await self._load(preset_id)

    async def _load(self, preset_id: str) -> Preset:
        async with self._write_lock:
            preset = await self._db(self.table.get, preset_id)
            if preset is None:
                raise status.PresetNotFoundException(f'No preset with id "{preset_id}".')
            preset.content = await self._blob(self.blobs.read, preset.id, preset.type)
        return preset

    @reports_failure(list, 'list presets')
    async def get_all(self) -> List[Preset]:
        """Return the metadata of every preset, most recently modified first.

        Content is not read; the returned presets carry empty content.
        """
        return await self._db(self.table.all)

    @reports_failure(False, 'delete preset')
    async def delete(self, preset_id: str) -> bool:
        """Delete a preset's metadata, content, favorite and recent membership.

        Returns:
            bool: False if there was no metadata for ``preset_id``.
        """
        async with self._write_lock:
            existed = await self._db(self._remove_metadata, preset_id)
            if not existed:
                logging.debug(f'Nothing to delete for preset "{preset_id}"')
                return False
            try:
                for preset_type in PresetType:
                    await self._blob(self.blobs.delete, preset_id, preset_type)
            except (status.IOFailureException, OSError) as ex:
                # The metadata is gone, reconcile() removes the blob later
                logging.warning(f'Content of deleted preset "{preset_id}" was left behind: {ex}')
                self.orphans.add(preset_id)
            else:
                self.orphans.discard(preset_id)

        logging.debug(f'Deleted preset "{preset_id}"')
        signals.presetDeleted.emit(preset_id)
        return True

    def _remove_metadata(self, preset_id: str) -> bool:
        with self.table.transaction():
            existed = self.table.remove(preset_id)
            if existed:
                self.favorites.remove(preset_id)
                self.recent.remove(preset_id)
        return existed

    @reports_failure(None, 'duplicate preset')
    async def duplicate(self, preset_id: str, new_name: Optional[str] = None) -> Optional[str]:
        """Copy a preset under a new id.

        The copy is named ``new_name`` or ``"<name> (Copy)"``, starts at version 1 with
        fresh timestamps, and is never a favorite.

        Returns:
            The new preset id, or None.
        """
        source = await self._load(preset_id)
        stamp = now_str()
        copy = Preset(
            id=generate_id('preset'),
            name=new_name or f'{source.name}{COPY_SUFFIX}',
            author=source.author,
            type=source.type,
            content=source.content,
            metadata=PresetMetadata(
                created_at=stamp,
                modified_at=stamp,
                is_favorite=False,
                tags=list(source.metadata.tags),
                version=1,
                custom_colors=source.metadata.custom_colors,
            ),
        )
        await self._save(copy)
        return copy.id

    @reports_failure(None, 'import preset')
    async def import_from_external_file(self, source_path: Union[str, pathlib.Path],
                                        name: Optional[str] = None) -> Optional[str]:
        """Import a preset file from outside the library.

        The type is inferred from the extension, the name defaults to the file name
        without its extension, and the preset is tagged ``imported``.

        Returns:
            The new preset id, or None.
        """
        path = pathlib.Path(source_path)
        try:
            content = await self._blob(_read_text, path)
        except (OSError, UnicodeDecodeError) as ex:
            raise status.IOFailureException(f'Failed to read {path}: {ex}') from ex

        stamp = now_str()
        preset = Preset(
            id=generate_id('preset'),
            name=name or path.stem or path.name,
            author=IMPORTED_AUTHOR,
            type=PresetType.from_filename(path.name),
            content=content,
            metadata=PresetMetadata(created_at=stamp, modified_at=stamp, tags=[IMPORTED_TAG]),
        )
        await self._save(preset)
        logging.info(f'Imported {path} as preset "{preset.id}"')
        return preset.id

    @reports_failure(None, 'export preset')
    async def export_to_external_file(self, preset_id: str) -> Optional[pathlib.Path]:
        """Write a preset's content to the export directory.

        The file is named after the sanitized preset name; exporting again overwrites it.

        Returns:
            The exported file path, or None.
        """
        return await self._export(preset_id)

    async def _export(self, preset_id: str) -> pathlib.Path:
        preset = await self._load(preset_id)
        path = self.exports_dir / f'{sanitize_filename(preset.name)}.{preset.type.extension}'
        try:
            await self._blob(_write_text, path, preset.content)
        except OSError as ex:
            raise status.IOFailureException(f'Failed to write {path}: {ex}') from ex
        logging.debug(f'Exported preset "{preset_id}" to {path}')
        return path

    @reports_failure(False, 'share preset')
    async def share(self, preset_id: str) -> bool:
        """Export a preset and hand the file to the system share surface.

        Returns:
            bool: False when exporting fails or sharing is unavailable on this device.
        """
        path = await self._export(preset_id)
        if not self.share_surface.is_available():
            raise status.ShareUnavailableException('Sharing is not available on this device.')
        self.share_surface.share(path)
        return True

    @reports_failure(list, 'search presets')
    async def search(self, query: str) -> List[Preset]:
        """Case-insensitive substring search over name, author and tags.

        Content is not searched. Results are ordered like :meth:`get_all`.
        """
        presets = await self._db(self.table.all)
        return [p for p in presets if p.matches(query)]

    # Favorites

    @reports_failure(False, 'add favorite')
    async def add_favorite(self, preset_id: str) -> bool:
        """Mark a preset as favorite. Adding an existing favorite is a no-op."""
        async with self._write_lock:
            await self._db(self._set_favorite, preset_id, True)
        signals.favoritesChanged.emit()
        return True

    @reports_failure(False, 'remove favorite')
    async def remove_favorite(self, preset_id: str) -> bool:
        """Unmark a preset as favorite. Removing a non-favorite is a no-op."""
        async with self._write_lock:
            await self._db(self._set_favorite, preset_id, False)
        signals.favoritesChanged.emit()
        return True

    def _set_favorite(self, preset_id: str, value: bool) -> None:
        with self.table.transaction():
            if value:
                self.favorites.add(preset_id)
            else:
                self.favorites.remove(preset_id)
            # Unknown ids get no metadata entry
            self.table.set_favorite(preset_id, value)

    @reports_failure(None, 'toggle favorite')
    async def toggle_favorite(self, preset_id: str) -> Optional[bool]:
        """Flip the favorite state of a preset.

        Returns:
            The new state, or None on failure.
        """
        async with self._write_lock:
            value = not await self._db(self.favorites.contains, preset_id)
            await self._db(self._set_favorite, preset_id, value)
        signals.favoritesChanged.emit()
        return value

    @reports_failure(False, 'read favorites')
    async def is_favorite(self, preset_id: str) -> bool:
        return await self._db(self.favorites.contains, preset_id)

    @reports_failure(list, 'read favorites')
    async def get_favorites(self) -> List[Preset]:
        """Return favorite presets, most recently modified first.

        Favorite ids without metadata are skipped.
        """
        ids = await self._db(self.favorites.ids)
        presets = await self._db(self._resolve, ids)
        return sort_by_modified(presets)

    # Recent

    @reports_failure(None, 'add to recent')
    async def add_to_recent(self, preset_id: str) -> None:
        """Move a preset id to the front of the recent history."""
        async with self._write_lock:
            await self._db(self.recent.touch, preset_id)
        signals.recentChanged.emit()

    @reports_failure(list, 'read recent')
    async def get_recent(self, limit: int = lib.DEFAULT_RECENT_LIMIT) -> List[Preset]:
        """Return up to ``limit`` recently used presets, most recent first.

        Recent ids without metadata are skipped.
        """
        ids = await self._db(self.recent.ids, limit)
        return await self._db(self._resolve, ids)

    # Collections

    @reports_failure(None, 'create collection')
    async def create_collection(self, name: str, initial_ids: Iterable[str] = ()) -> Optional[str]:
        """Create a named collection.

        Returns:
            The new collection id, or None.
        """
        async with self._write_lock:
            collection = await self._db(self.collections.create, name, list(initial_ids))
        signals.collectionsChanged.emit()
        return collection.id

    @reports_failure(False, 'add to collection')
    async def add_to_collection(self, collection_id: str, preset_id: str) -> bool:
        """Append a preset id to a collection.

        The preset id is not validated. Returns False if the collection does not exist.
        """
        async with self._write_lock:
            found = await self._db(self.collections.add, collection_id, preset_id)
        if not found:
            raise status.CollectionNotFoundException(f'No collection with id "{collection_id}".')
        signals.collectionsChanged.emit()
        return True

    @reports_failure(False, 'remove from collection')
    async def remove_from_collection(self, collection_id: str, preset_id: str) -> bool:
        async with self._write_lock:
            found = await self._db(self.collections.remove_preset, collection_id, preset_id)
        if not found:
            raise status.CollectionNotFoundException(f'No collection with id "{collection_id}".')
        signals.collectionsChanged.emit()
        return True

    @reports_failure(False, 'rename collection')
    async def rename_collection(self, collection_id: str, name: str) -> bool:
        async with self._write_lock:
            found = await self._db(self.collections.rename, collection_id, name)
        if not found:
            raise status.CollectionNotFoundException(f'No collection with id "{collection_id}".')
        signals.collectionsChanged.emit()
        return True

    @reports_failure(False, 'delete collection')
    async def delete_collection(self, collection_id: str) -> bool:
        async with self._write_lock:
            found = await self._db(self.collections.delete, collection_id)
        if not found:
            raise status.CollectionNotFoundException(f'No collection with id "{collection_id}".')
        signals.collectionsChanged.emit()
        return True

    @reports_failure(None, 'read collection')
    async def get_collection(self, collection_id: str) -> Optional[PresetCollection]:
        collection = await self._db(self.collections.get, collection_id)
        if collection is None:
            raise status.CollectionNotFoundException(f'No collection with id "{collection_id}".')
        return collection

    @reports_failure(list, 'read collection')
    async def get_collection_presets(self, collection_id: str) -> List[Preset]:
        """Return the presets of a collection in collection order, skipping stale ids."""
        collection = await self._db(self.collections.get, collection_id)
        if collection is None:
            raise status.CollectionNotFoundException(f'No collection with id "{collection_id}".')
        return await self._db(self._resolve, collection.preset_ids)

    @reports_failure(list, 'list collections')
    async def get_all_collections(self) -> List[PresetCollection]:
        """Return every collection, newest first."""
        return await self._db(self.collections.all)

    # Records

    @reports_failure(None, 'read record')
    async def get_record(self, key: str, default: Any = None) -> Any:
        """Return the JSON value stored under a :class:`~PresetLibrary.settings.lib.StorageKey`."""
        return await self._db(self.table.get_record, key, default)

    @reports_failure(False, 'write record')
    async def set_record(self, key: str, value: Any) -> bool:
        async with self._write_lock:
            await self._db(self.table.set_record, key, value)
        return True

    @reports_failure(False, 'delete record')
    async def delete_record(self, key: str) -> bool:
        async with self._write_lock:
            return await self._db(self.table.delete_record, key)

    # Maintenance

    @reports_failure(None, 'reconcile storage')
    async def reconcile(self) -> Optional[ReconcileReport]:
        """Sweep the stores for inconsistencies left behind by partial failures.

        - Content blobs without metadata are removed.
        - Metadata without content is reported and left in place.
        - The favorites index is rebuilt from the ``is_favorite`` flags.
        - Favorite and recent ids without metadata are purged.

        Collections keep their soft references.
        """
        report = ReconcileReport()
        async with self._write_lock:
            presets = await self._db(self.table.all)
            known = {p.id: p.type for p in presets}

            blob_keys = await self._blob(self.blobs.list_keys)
            for preset_id, preset_type in blob_keys:
                if known.get(preset_id) is preset_type:
                    continue
                await self._blob(self.blobs.delete, preset_id, preset_type)
                report.removed_blobs.append(preset_id)
                logging.info(f'Removed orphaned content of "{preset_id}" ({preset_type.name})')

            blob_set = set(blob_keys)
            report.missing_content = [p.id for p in presets if (p.id, p.type) not in blob_set]
            for preset_id in report.missing_content:
                logging.warning(f'Preset "{preset_id}" has metadata but no content')

            flagged = [p.id for p in reversed(presets) if p.metadata.is_favorite]
            await self._db(self._repair_indices, known, flagged, report)
            self.orphans.clear()

        if not report.is_clean:
            signals.presetsChanged.emit()
            signals.favoritesChanged.emit()
            signals.recentChanged.emit()
        return report

    def _repair_indices(self, known: dict, flagged: List[str], report: ReconcileReport) -> None:
        with self.table.transaction():
            favorite_ids = self.favorites.ids()
            report.stale_favorites = [i for i in favorite_ids if i not in known]

            flagged_set = set(flagged)
            repaired = [i for i in favorite_ids if i in flagged_set]
            repaired += [i for i in flagged if i not in repaired]
            report.repaired_favorites = sorted(
                (set(repaired) ^ set(favorite_ids)) - set(report.stale_favorites)
            )
            if repaired != favorite_ids:
                self.favorites.replace(repaired)

            recent_ids = self.recent.ids()
            report.stale_recent = [i for i in recent_ids if i not in known]
            if report.stale_recent:
                self.recent.replace(i for i in recent_ids if i in known)
