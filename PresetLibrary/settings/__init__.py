"""
Settings package: application paths and storage configuration.

This package provides:

- :mod:`PresetLibrary.settings.lib` – Application data paths, storage keys and limits.
"""
