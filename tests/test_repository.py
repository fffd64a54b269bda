"""
Tests for PresetLibrary.core.repository

Run with:
    python -m unittest tests.test_repository
"""
import asyncio
import datetime
import sqlite3
import unittest
from unittest.mock import patch

from PresetLibrary.core import repository as repository_module
from PresetLibrary.core.blobstore import MemoryBlobStore
from PresetLibrary.core.database import MetadataTable
from PresetLibrary.core.model import PresetType, parse_timestamp
from PresetLibrary.core.repository import PresetRepository, sanitize_filename
from PresetLibrary.core.signals import signals
from PresetLibrary.settings import lib
from PresetLibrary.status import status
from tests.base import BaseRepositoryTestCase, make_fixed_preset, make_preset


class SanitizeFilenameTests(unittest.TestCase):

    def test_strips_non_alphanumerics(self):
        self.assertEqual(sanitize_filename('Neon Dreams!'), 'NeonDreams')
        self.assertEqual(sanitize_filename('a/b\\c:d'), 'abcd')

    def test_fallback(self):
        self.assertEqual(sanitize_filename('***'), 'preset')
        self.assertEqual(sanitize_filename(''), 'preset')


class SaveLoadTests(BaseRepositoryTestCase):

    async def test_round_trip(self):
        preset = make_preset(tags=['dancer'])
        preset.metadata.custom_colors = True
        before = parse_timestamp(preset.metadata.modified_at)
        expected = preset.copy()

        self.assertTrue(await self.repository.save(preset))
        loaded = await self.repository.load(preset.id)

        self.assertEqual(loaded.content, expected.content)
        self.assertEqual(loaded.name, expected.name)
        self.assertEqual(loaded.author, expected.author)
        self.assertIs(loaded.type, expected.type)
        self.assertEqual(loaded.metadata.created_at, expected.metadata.created_at)
        self.assertEqual(loaded.metadata.tags, expected.metadata.tags)
        self.assertEqual(loaded.metadata.version, expected.metadata.version)
        self.assertEqual(loaded.metadata.is_favorite, expected.metadata.is_favorite)
        self.assertEqual(loaded.metadata.custom_colors, expected.metadata.custom_colors)
        self.assertGreaterEqual(parse_timestamp(loaded.metadata.modified_at), before)
        self.assertEqual(self.repository.last_status, status.Status.Okay)

    async def test_scenario(self):
        preset = make_fixed_preset('p1', name='Test', content='[preset00]\nzoom=1.0\n')
        preset.author = 'Ann'

        self.assertTrue(await self.repository.save(preset))
        loaded = await self.repository.load('p1')
        self.assertEqual(loaded.content, '[preset00]\nzoom=1.0\n')

        self.assertTrue(await self.repository.add_favorite('p1'))
        favorites = await self.repository.get_favorites()
        self.assertEqual([p.name for p in favorites], ['Test'])

        self.assertTrue(await self.repository.delete('p1'))
        self.assertEqual(await self.repository.get_all(), [])

    async def test_save_requires_id(self):
        preset = make_preset()
        preset.id = ''
        self.assertFalse(await self.repository.save(preset))
        self.assertEqual(self.repository.last_status, status.Status.InvalidPreset)

    async def test_save_rejects_ids_that_are_not_file_names(self):
        for preset_id in ('../escaped', 'a/b'):
            self.assertFalse(await self.repository.save(make_fixed_preset(preset_id)), preset_id)
            self.assertEqual(self.repository.last_status, status.Status.InvalidPreset)
        self.assertFalse((self.config_paths.presets_dir.parent / 'escaped.typeA').exists())
        self.assertEqual(await self.repository.get_all(), [])
        self.assertTrue((await self.repository.reconcile()).is_clean)

    async def test_save_keeps_created_at_and_advances_modified_at(self):
        preset = make_fixed_preset('p1', modified_at='2024-01-01T00:00:00+00:00')
        await self.repository.save(preset)

        update = make_fixed_preset('p1', content='y', modified_at='2020-01-01T00:00:00+00:00')
        await self.repository.save(update)

        loaded = await self.repository.load('p1')
        self.assertEqual(loaded.content, 'y')
        self.assertEqual(loaded.metadata.created_at, '2024-01-01T00:00:00+00:00')
        self.assertGreater(parse_timestamp(loaded.metadata.modified_at),
                           datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc))

    async def test_save_updates_caller_timestamps(self):
        preset = make_fixed_preset('p1', modified_at='2020-01-01T00:00:00+00:00')
        await self.repository.save(preset)
        stored = (await self.repository.get_all())[0]
        self.assertEqual(preset.metadata.modified_at, stored.metadata.modified_at)

    async def test_save_syncs_favorites_index(self):
        preset = make_preset(is_favorite=True)
        await self.repository.save(preset)
        self.assertTrue(await self.repository.is_favorite(preset.id))

        preset.metadata.is_favorite = False
        await self.repository.save(preset)
        self.assertFalse(await self.repository.is_favorite(preset.id))
        self.assertEqual(await self.repository.get_favorites(), [])

    async def test_type_change_moves_content(self):
        preset = make_preset()
        await self.repository.save(preset)
        preset.type = PresetType.FormatB
        await self.repository.save(preset)

        self.assertFalse(self.repository.blobs.exists(preset.id, PresetType.FormatA))
        loaded = await self.repository.load(preset.id)
        self.assertIs(loaded.type, PresetType.FormatB)
        self.assertEqual(loaded.content, preset.content)

    async def test_load_missing(self):
        self.assertIsNone(await self.repository.load('missing'))
        self.assertEqual(self.repository.last_status, status.Status.NotFound)

    async def test_load_with_missing_content(self):
        preset = make_preset()
        await self.repository.save(preset)
        self.repository.blobs.path(preset.id, preset.type).unlink()

        self.assertIsNone(await self.repository.load(preset.id))
        self.assertEqual(self.repository.last_status, status.Status.IOFailure)

    async def test_load_corrupt_metadata(self):
        preset = make_preset()
        await self.repository.save(preset)
        self.repository.table._conn.execute('UPDATE presets SET type=? WHERE id=?', ('FormatC', preset.id))
        self.repository.table._conn.commit()

        self.assertIsNone(await self.repository.load(preset.id))
        self.assertEqual(self.repository.last_status, status.Status.SerializationFailure)

    async def test_get_all_is_sorted_and_content_free(self):
        await self.repository.save(make_fixed_preset('a'))
        await self.repository.save(make_fixed_preset('b'))
        presets = await self.repository.get_all()
        self.assertEqual([p.id for p in presets], ['b', 'a'])
        self.assertTrue(all(p.content == '' for p in presets))

    async def test_data_survives_reopen(self):
        preset = make_preset(is_favorite=True)
        await self.repository.save(preset)
        await self.repository.add_to_recent(preset.id)
        self.repository.close()

        self.repository = self.open_repository()
        loaded = await self.repository.load(preset.id)
        self.assertEqual(loaded.content, preset.content)
        self.assertEqual([p.id for p in await self.repository.get_favorites()], [preset.id])
        self.assertEqual([p.id for p in await self.repository.get_recent()], [preset.id])

    async def test_signals(self):
        saved, deleted, changed = [], [], []

        def on_saved(preset_id: str) -> None:
            saved.append(preset_id)

        def on_deleted(preset_id: str) -> None:
            deleted.append(preset_id)

        def on_changed() -> None:
            changed.append(True)

        signals.presetSaved.connect(on_saved)
        signals.presetDeleted.connect(on_deleted)
        signals.presetsChanged.connect(on_changed)
        try:
            preset = make_preset()
            await self.repository.save(preset)
            await self.repository.delete(preset.id)
        finally:
            signals.presetSaved.disconnect(on_saved)
            signals.presetDeleted.disconnect(on_deleted)
            signals.presetsChanged.disconnect(on_changed)

        self.assertEqual(saved, [preset.id])
        self.assertEqual(deleted, [preset.id])
        self.assertEqual(len(changed), 2)


class DeleteDuplicateTests(BaseRepositoryTestCase):

    async def test_delete_completeness(self):
        preset = make_preset(is_favorite=True)
        await self.repository.save(preset)
        await self.repository.add_to_recent(preset.id)

        self.assertTrue(await self.repository.delete(preset.id))
        self.assertIsNone(await self.repository.load(preset.id))
        self.assertEqual(self.repository.last_status, status.Status.NotFound)
        self.assertEqual(await self.repository.get_favorites(), [])
        self.assertEqual(self.repository.favorites.ids(), [])
        self.assertEqual(self.repository.recent.ids(), [])
        self.assertFalse(self.repository.blobs.exists(preset.id, preset.type))
        self.assertFalse(await self.repository.delete(preset.id))

    async def test_delete_when_content_removal_fails(self):
        preset = make_preset(is_favorite=True)
        await self.repository.save(preset)
        deleted = []

        def on_deleted(preset_id: str) -> None:
            deleted.append(preset_id)

        signals.presetDeleted.connect(on_deleted)
        try:
            with patch.object(self.repository.blobs, 'delete',
                              side_effect=status.IOFailureException('read-only')):
                self.assertTrue(await self.repository.delete(preset.id))
        finally:
            signals.presetDeleted.disconnect(on_deleted)

        self.assertEqual(self.repository.last_status, status.Status.Okay)
        self.assertEqual(deleted, [preset.id])
        self.assertEqual(self.repository.orphans, {preset.id})
        self.assertIsNone(await self.repository.load(preset.id))
        self.assertEqual(self.repository.favorites.ids(), [])
        self.assertTrue(self.repository.blobs.exists(preset.id, preset.type))

        report = await self.repository.reconcile()
        self.assertEqual(report.removed_blobs, [preset.id])
        self.assertEqual(self.repository.orphans, set())

    async def test_delete_keeps_collection_references(self):
        preset = make_preset()
        await self.repository.save(preset)
        collection_id = await self.repository.create_collection('Chill', [preset.id])
        await self.repository.delete(preset.id)

        collection = await self.repository.get_collection(collection_id)
        self.assertEqual(collection.preset_ids, [preset.id])
        self.assertEqual(await self.repository.get_collection_presets(collection_id), [])

    async def test_duplicate_independence(self):
        source = make_preset(tags=['dancer'], is_favorite=True)
        await self.repository.save(source)

        new_id = await self.repository.duplicate(source.id)
        self.assertIsNotNone(new_id)
        self.assertNotEqual(new_id, source.id)

        copy = await self.repository.load(new_id)
        self.assertEqual(copy.content, source.content)
        self.assertEqual(copy.name, 'Neon Dreams (Copy)')
        self.assertFalse(copy.metadata.is_favorite)
        self.assertEqual(copy.metadata.version, 1)

        copy.metadata.tags.append('mine')
        copy.metadata.version = 7
        await self.repository.save(copy)

        original = await self.repository.load(source.id)
        self.assertEqual(original.metadata.tags, ['dancer'])
        self.assertEqual(original.metadata.version, 1)
        self.assertTrue(original.metadata.is_favorite)

    async def test_duplicate_with_name(self):
        source = make_preset()
        await self.repository.save(source)
        new_id = await self.repository.duplicate(source.id, 'Other')
        self.assertEqual((await self.repository.load(new_id)).name, 'Other')

    async def test_duplicate_missing(self):
        self.assertIsNone(await self.repository.duplicate('missing'))
        self.assertEqual(self.repository.last_status, status.Status.NotFound)


class ImportExportShareTests(BaseRepositoryTestCase):

    async def test_import(self):
        source = self.root_dir / 'My Cool Preset.typeB'
        source.write_text('[preset00]\nrot=0.1\n', encoding='utf-8')

        preset_id = await self.repository.import_from_external_file(source)
        preset = await self.repository.load(preset_id)
        self.assertEqual(preset.name, 'My Cool Preset')
        self.assertEqual(preset.author, 'Imported')
        self.assertIs(preset.type, PresetType.FormatB)
        self.assertEqual(preset.metadata.tags, ['imported'])
        self.assertEqual(preset.content, '[preset00]\nrot=0.1\n')

    async def test_import_with_name(self):
        source = self.root_dir / 'x.typeA'
        source.write_text('x', encoding='utf-8')
        preset_id = await self.repository.import_from_external_file(source, name='Named')
        preset = await self.repository.load(preset_id)
        self.assertEqual(preset.name, 'Named')
        self.assertIs(preset.type, PresetType.FormatA)

    async def test_import_unreadable(self):
        self.assertIsNone(await self.repository.import_from_external_file(self.root_dir / 'missing.typeA'))
        self.assertEqual(self.repository.last_status, status.Status.IOFailure)
        self.assertEqual(await self.repository.get_all(), [])

    async def test_export_overwrites(self):
        preset = make_preset(name='Neon Dreams!')
        await self.repository.save(preset)

        path = await self.repository.export_to_external_file(preset.id)
        self.assertEqual(path, self.config_paths.exports_dir / 'NeonDreams.typeA')
        self.assertEqual(path.read_text(encoding='utf-8'), preset.content)

        preset.content = 'changed'
        await self.repository.save(preset)
        again = await self.repository.export_to_external_file(preset.id)
        self.assertEqual(again, path)
        self.assertEqual(path.read_text(encoding='utf-8'), 'changed')

    async def test_export_missing(self):
        self.assertIsNone(await self.repository.export_to_external_file('missing'))
        self.assertEqual(self.repository.last_status, status.Status.NotFound)

    async def test_share(self):
        preset = make_preset()
        await self.repository.save(preset)
        self.assertTrue(await self.repository.share(preset.id))
        self.assertEqual(self.share_surface.shared, [self.config_paths.exports_dir / 'NeonDreams.typeA'])

    async def test_share_unavailable(self):
        preset = make_preset()
        await self.repository.save(preset)
        self.share_surface.available = False

        self.assertFalse(await self.repository.share(preset.id))
        self.assertEqual(self.repository.last_status, status.Status.Unavailable)
        # the export itself still happened
        self.assertTrue((self.config_paths.exports_dir / 'NeonDreams.typeA').is_file())


class SearchTests(BaseRepositoryTestCase):

    async def asyncSetUp(self) -> None:
        await self.repository.save(make_preset(tags=['Dancer']))
        await self.repository.save(make_preset(name='Spiral Gate', author='Flexi', content='neon'))

    async def test_case_insensitive(self):
        for query in ('neon', 'GEISS', 'dancer'):
            results = await self.repository.search(query)
            self.assertEqual([p.name for p in results], ['Neon Dreams'], query)

    async def test_no_match(self):
        self.assertEqual(await self.repository.search('waveform'), [])

    async def test_content_is_not_searched(self):
        results = await self.repository.search('neon')
        self.assertNotIn('Spiral Gate', [p.name for p in results])


class FavoritesRecentTests(BaseRepositoryTestCase):

    async def test_favorite_idempotence(self):
        preset = make_preset()
        await self.repository.save(preset)

        await self.repository.add_favorite(preset.id)
        once = self.repository.favorites.ids()
        await self.repository.add_favorite(preset.id)
        self.assertEqual(self.repository.favorites.ids(), once)
        self.assertTrue((await self.repository.load(preset.id)).metadata.is_favorite)

        await self.repository.remove_favorite(preset.id)
        await self.repository.remove_favorite(preset.id)
        self.assertEqual(self.repository.favorites.ids(), [])
        self.assertFalse((await self.repository.load(preset.id)).metadata.is_favorite)

    async def test_favorite_keeps_modified_at(self):
        preset = make_fixed_preset('p1', modified_at='2024-01-01T00:00:00+00:00')
        await self.repository.save(preset)
        before = (await self.repository.get_all())[0].metadata.modified_at

        await self.repository.add_favorite('p1')
        after = await self.repository.load('p1')
        self.assertTrue(after.metadata.is_favorite)
        self.assertEqual(after.metadata.modified_at, before)

    async def test_favorite_unknown_id(self):
        self.assertTrue(await self.repository.add_favorite('ghost'))
        self.assertFalse(self.repository.table.contains('ghost'))
        self.assertEqual(await self.repository.get_favorites(), [])

    async def test_toggle_favorite(self):
        preset = make_preset()
        await self.repository.save(preset)
        self.assertTrue(await self.repository.toggle_favorite(preset.id))
        self.assertTrue(await self.repository.is_favorite(preset.id))
        self.assertFalse(await self.repository.toggle_favorite(preset.id))
        self.assertFalse(await self.repository.is_favorite(preset.id))

    async def test_favorites_sorted_by_modified(self):
        await self.repository.save(make_fixed_preset('a'))
        await self.repository.save(make_fixed_preset('b'))
        await self.repository.add_favorite('b')
        await self.repository.add_favorite('a')
        self.assertEqual([p.id for p in await self.repository.get_favorites()], ['b', 'a'])

    async def test_recent_bound(self):
        ids = []
        for i in range(60):
            preset = make_fixed_preset(f'p{i:02d}')
            await self.repository.save(preset)
            await self.repository.add_to_recent(preset.id)
            ids.append(preset.id)

        recent = [p.id for p in await self.repository.get_recent(100)]
        self.assertEqual(len(recent), lib.MAX_RECENT)
        self.assertEqual(len(set(recent)), lib.MAX_RECENT)
        self.assertEqual(recent, list(reversed(ids))[:lib.MAX_RECENT])

    async def test_recent_default_limit_and_stale_ids(self):
        for i in range(25):
            await self.repository.save(make_fixed_preset(f'p{i:02d}'))
            await self.repository.add_to_recent(f'p{i:02d}')
        await self.repository.add_to_recent('ghost')

        recent = await self.repository.get_recent()
        self.assertEqual(len(recent), lib.DEFAULT_RECENT_LIMIT - 1)
        self.assertEqual(recent[0].id, 'p24')


class CollectionTests(BaseRepositoryTestCase):

    async def test_collection_lifecycle(self):
        preset = make_preset()
        await self.repository.save(preset)

        collection_id = await self.repository.create_collection('Chill')
        self.assertTrue(await self.repository.add_to_collection(collection_id, preset.id))
        self.assertTrue(await self.repository.add_to_collection(collection_id, preset.id))
        self.assertTrue(await self.repository.add_to_collection(collection_id, 'not-a-preset'))

        collection = await self.repository.get_collection(collection_id)
        self.assertEqual(collection.preset_ids, [preset.id, 'not-a-preset'])
        presets = await self.repository.get_collection_presets(collection_id)
        self.assertEqual([p.id for p in presets], [preset.id])

        self.assertTrue(await self.repository.remove_from_collection(collection_id, preset.id))
        self.assertTrue(await self.repository.rename_collection(collection_id, 'Party'))
        collection = await self.repository.get_collection(collection_id)
        self.assertEqual((collection.name, collection.preset_ids), ('Party', ['not-a-preset']))

        self.assertTrue(await self.repository.delete_collection(collection_id))
        self.assertEqual(await self.repository.get_all_collections(), [])

    async def test_unknown_collection(self):
        self.assertFalse(await self.repository.add_to_collection('missing', 'p1'))
        self.assertEqual(self.repository.last_status, status.Status.NotFound)
        self.assertFalse(await self.repository.delete_collection('missing'))
        self.assertIsNone(await self.repository.get_collection('missing'))
        self.assertEqual(await self.repository.get_collection_presets('missing'), [])

    async def test_all_collections_newest_first(self):
        first = await self.repository.create_collection('First', ['a'])
        second = await self.repository.create_collection('Second')
        collections = await self.repository.get_all_collections()
        self.assertEqual([c.id for c in collections], [second, first])
        self.assertEqual(collections[1].preset_ids, ['a'])


class ConsistencyTests(BaseRepositoryTestCase):

    async def test_concurrent_saves_lose_nothing(self):
        presets = [make_preset(name=f'Preset {i}', is_favorite=i % 2 == 0) for i in range(30)]
        results = await asyncio.gather(*(self.repository.save(p) for p in presets))
        self.assertTrue(all(results))

        stored = {p.id for p in await self.repository.get_all()}
        self.assertEqual(stored, {p.id for p in presets})
        favorites = {p.id for p in await self.repository.get_favorites()}
        self.assertEqual(favorites, {p.id for p in presets if p.metadata.is_favorite})

    async def test_concurrent_mixed_operations(self):
        presets = [make_preset(name=f'Preset {i}') for i in range(10)]
        for preset in presets:
            await self.repository.save(preset)

        await asyncio.gather(
            *(self.repository.add_favorite(p.id) for p in presets),
            *(self.repository.add_to_recent(p.id) for p in presets),
            *(self.repository.save(make_preset(name=f'New {i}')) for i in range(10)),
        )
        self.assertEqual(len(await self.repository.get_all()), 20)
        self.assertEqual(len(await self.repository.get_favorites()), 10)
        self.assertEqual(len(await self.repository.get_recent()), 10)

    async def test_new_preset_rolled_back_when_metadata_write_fails(self):
        preset = make_preset()
        with patch.object(self.repository.table, 'put', side_effect=sqlite3.OperationalError('disk I/O error')):
            self.assertFalse(await self.repository.save(preset))

        self.assertEqual(self.repository.last_status, status.Status.IOFailure)
        self.assertFalse(self.repository.blobs.exists(preset.id, preset.type))
        self.assertEqual(self.repository.orphans, set())
        self.assertIsNone(await self.repository.load(preset.id))

    async def test_update_rolled_back_when_metadata_write_fails(self):
        preset = make_preset(content='old')
        await self.repository.save(preset)
        preset.content = 'new'
        preset.metadata.is_favorite = True

        with patch.object(self.repository.table, 'put', side_effect=sqlite3.OperationalError('disk I/O error')):
            self.assertFalse(await self.repository.save(preset))

        loaded = await self.repository.load(preset.id)
        self.assertEqual(loaded.content, 'old')
        self.assertFalse(loaded.metadata.is_favorite)
        self.assertFalse(await self.repository.is_favorite(preset.id))

    async def test_failed_rollback_is_swept_by_reconcile(self):
        preset = make_preset()
        with patch.object(self.repository.table, 'put', side_effect=sqlite3.OperationalError('disk I/O error')), \
                patch.object(self.repository.blobs, 'delete', side_effect=OSError('read-only')):
            self.assertFalse(await self.repository.save(preset))

        self.assertEqual(self.repository.orphans, {preset.id})
        self.assertTrue(self.repository.blobs.exists(preset.id, preset.type))

        report = await self.repository.reconcile()
        self.assertEqual(report.removed_blobs, [preset.id])
        self.assertFalse(self.repository.blobs.exists(preset.id, preset.type))
        self.assertEqual(self.repository.orphans, set())

    async def test_reconcile(self):
        kept = make_preset(is_favorite=True)
        await self.repository.save(kept)
        missing = make_fixed_preset('missing-content')
        self.repository.table.put(missing)
        self.repository.blobs.write('ghost', PresetType.FormatB, 'x')
        self.repository.table.set_record(lib.StorageKey.Favorites, ['stale'])
        self.repository.table.set_record(lib.StorageKey.Recent, ['stale', kept.id])

        report = await self.repository.reconcile()
        self.assertEqual(report.removed_blobs, ['ghost'])
        self.assertEqual(report.missing_content, ['missing-content'])
        self.assertEqual(report.stale_favorites, ['stale'])
        self.assertEqual(report.stale_recent, ['stale'])
        self.assertEqual(report.repaired_favorites, [kept.id])
        self.assertEqual(self.repository.favorites.ids(), [kept.id])
        self.assertEqual(self.repository.recent.ids(), [kept.id])

        again = await self.repository.reconcile()
        self.assertEqual(again.missing_content, ['missing-content'])
        self.assertEqual(again.removed_blobs, [])

    async def test_reconcile_clean(self):
        await self.repository.save(make_preset())
        report = await self.repository.reconcile()
        self.assertTrue(report.is_clean)

    async def test_io_errors_are_reported(self):
        with patch.object(repository_module, '_read_text', side_effect=PermissionError('denied')):
            self.assertIsNone(await self.repository.import_from_external_file(self.root_dir / 'x.typeA'))
        self.assertEqual(self.repository.last_status, status.Status.IOFailure)


class InMemoryRepositoryTests(BaseRepositoryTestCase):

    def open_repository(self) -> PresetRepository:
        return PresetRepository(
            MemoryBlobStore(),
            MetadataTable(),
            self.config_paths.exports_dir,
            share_surface=self.share_surface,
        )

    async def test_round_trip(self):
        preset = make_preset()
        async with self.repository as repo:
            self.assertTrue(await repo.save(preset))
            self.assertEqual((await repo.load(preset.id)).content, preset.content)
            self.assertEqual(await repo.export_to_external_file(preset.id),
                             self.config_paths.exports_dir / 'NeonDreams.typeA')
