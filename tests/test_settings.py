"""
Tests for PresetLibrary.settings.lib

Run with:
    python -m unittest tests.test_settings
"""
import pathlib
import shutil

from PySide6 import QtCore

from PresetLibrary.settings import lib
from tests.base import BaseTestCase


class ConfigPathsTests(BaseTestCase):

    def test_directories_created(self):
        for path in (self.config_paths.presets_dir, self.config_paths.exports_dir, self.config_paths.db_dir):
            self.assertTrue(path.is_dir(), path)
        self.assertEqual(self.config_paths.db_path, self.config_paths.db_dir / lib.DB_FILENAME)

    def test_missing_directories_are_recreated(self):
        shutil.rmtree(self.config_paths.presets_dir)
        paths = lib.ConfigPaths(self.root_dir)
        self.assertTrue(paths.presets_dir.is_dir())

    def test_assets_ship_with_package(self):
        self.assertTrue(self.config_paths.manifest_path.is_file())
        self.assertEqual(self.config_paths.manifest_path.name, lib.MANIFEST_FILENAME)

    def test_default_root_uses_app_data_location(self):
        QtCore.QStandardPaths.setTestModeEnabled(True)
        self.addCleanup(QtCore.QStandardPaths.setTestModeEnabled, False)

        paths = lib.ConfigPaths()
        self.addCleanup(shutil.rmtree, paths.app_data_dir, ignore_errors=True)

        expected = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        self.assertEqual(paths.app_data_dir, pathlib.Path(expected))
        self.assertEqual(QtCore.QCoreApplication.applicationName(), lib.app_name)
        self.assertTrue(paths.presets_dir.is_dir())

    def test_storage_keys(self):
        self.assertEqual(lib.StorageKey.BundledPresetsLoaded, 'bundled-presets-loaded-flag')
        self.assertEqual(lib.MAX_RECENT, 50)
        self.assertEqual(lib.DEFAULT_RECENT_LIMIT, 20)
