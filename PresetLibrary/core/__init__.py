"""
Core package for PresetLibrary providing preset persistence.

This package includes:

- :mod:`PresetLibrary.core.model` – Preset, metadata and collection records, id and timestamp helpers.
- :mod:`PresetLibrary.core.blobstore` – One-file-per-preset content storage.
- :mod:`PresetLibrary.core.database` – SQLite metadata table and index records.
- :mod:`PresetLibrary.core.indices` – Favorites, recent and collection indices.
- :mod:`PresetLibrary.core.repository` – Asynchronous repository facade keeping the stores consistent.
- :mod:`PresetLibrary.core.share` – System share surface.
- :mod:`PresetLibrary.core.catalog` – Bundled preset manifest, first-launch importer and manifest builder.
- :mod:`PresetLibrary.core.signals` – Application-wide Qt signals.
"""
