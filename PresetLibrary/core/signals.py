"""Application-wide Qt signals for PresetLibrary.

This module provides:
    - Signals: custom Qt signals for preset storage changes, index changes,
      first-launch seeding, and error reporting (error, showLogs).
"""
import logging

from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for preset storage events."""
    presetSaved = QtCore.Signal(str)  # Preset id
    presetDeleted = QtCore.Signal(str)  # Preset id
    presetsChanged = QtCore.Signal()

    favoritesChanged = QtCore.Signal()
    recentChanged = QtCore.Signal()
    collectionsChanged = QtCore.Signal()

    bundledPresetsLoaded = QtCore.Signal(int, int)  # Succeeded, failed

    showLogs = QtCore.Signal()
    error = QtCore.Signal(str)

    def __init__(self):
        super().__init__()
        self._connect_signals()

    def _connect_signals(self):
        self.presetSaved.connect(lambda _: self.presetsChanged.emit())
        self.presetDeleted.connect(lambda _: self.presetsChanged.emit())

        @QtCore.Slot(int, int)
        def bundled_presets_loaded(succeeded: int, failed: int) -> None:
            logging.debug(f'Bundled presets loaded: {succeeded} succeeded, {failed} failed')

        self.bundledPresetsLoaded.connect(bundled_presets_loaded)


signals = Signals()
