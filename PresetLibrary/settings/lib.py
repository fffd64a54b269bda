"""Settings library for preset storage locations and limits.

Provides:
    - Application data paths for preset content, exports, the metadata database and bundled assets.
    - Storage namespace keys for the index records.
    - Constants for the recent history bound and default listing limits.
"""
import enum
import logging
import pathlib
from typing import Optional, Union

from PySide6 import QtCore

app_name: str = 'PresetLibrary'

# Recent history keeps at most this many preset ids
MAX_RECENT: int = 50
DEFAULT_RECENT_LIMIT: int = 20

DB_FILENAME: str = 'presets.db'
MANIFEST_FILENAME: str = 'preset-catalog.json'

# Marks an in-memory database, used by tests
MEMORY_DB: str = ':memory:'


class StorageKey(enum.StrEnum):
    """Storage namespace keys for the records kept next to the metadata table."""
    Presets = 'presets'
    Collections = 'collections'
    Favorites = 'favorites'
    Recent = 'recent'
    BundledPresetsLoaded = 'bundled-presets-loaded-flag'
    BundledPresetsImported = 'bundled-presets-imported'


class ConfigPaths:
    """Manage application file paths and ensure the storage directories exist.

    This class resolves the application data directory and derives the locations of
    preset content, exported presets, the metadata database and the bundled preset assets.
    """

    def __init__(self, root: Optional[Union[str, pathlib.Path]] = None) -> None:
        """Set up application paths and create missing directories.

        Args:
            root: Optional root directory. When omitted, Qt's writable AppDataLocation is used.
        """
        if root is None:
            # Set the application name and organization
            QtCore.QCoreApplication.setApplicationName(app_name)
            QtCore.QCoreApplication.setOrganizationName('')
            logging.debug(f'Setting application name: {app_name}')

            # Get the app data directory
            p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
            root = pathlib.Path(p)

        self.app_data_dir: pathlib.Path = pathlib.Path(root)
        logging.debug(f'Using app data directory: {self.app_data_dir}')

        self.presets_dir: pathlib.Path = self.app_data_dir / 'presets'
        self.exports_dir: pathlib.Path = self.app_data_dir / 'exports'
        self.db_dir: pathlib.Path = self.app_data_dir / 'db'
        self.db_path: pathlib.Path = self.db_dir / DB_FILENAME

        # Bundled assets ship next to the package
        self.assets_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'assets'
        self.manifest_path: pathlib.Path = self.assets_dir / MANIFEST_FILENAME

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Create missing preset, export and database directories."""
        for path in (self.presets_dir, self.exports_dir, self.db_dir):
            if not path.exists():
                logging.debug(f'Creating directory: {path}')
                path.mkdir(parents=True, exist_ok=True)
