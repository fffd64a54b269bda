"""
PresetLibrary: preset persistence core for a real-time visualizer shell.

This package provides:

- :mod:`PresetLibrary.core` – Preset model, content blob store, metadata table, indices, the
  asynchronous repository facade, sharing, and the bundled catalog importer.
- :mod:`PresetLibrary.settings` – Application paths and storage configuration.
- :mod:`PresetLibrary.status` – Status codes and the exception taxonomy.
- :mod:`PresetLibrary.log` – Logging setup with an in-memory log tank.

Use :meth:`PresetLibrary.core.repository.PresetRepository.open` to get a repository.
"""
import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('PresetLibrary requires Python 3.11 or higher.')

__version__ = '0.1.0'
__author__ = 'Gergely Wootsch'
__license__ = 'GPL-3.0'
__copyright__ = 'Copyright (C) 2025 Gergely Wootsch'
__description__ = 'PresetLibrary: preset storage, favorites, history and collections for a visualizer shell.'
__email__ = 'hello+PresetLibrary@gergely-wootsch.com'

from .log import log

log.setup_logging()
