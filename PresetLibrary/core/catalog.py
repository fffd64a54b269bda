"""Bundled preset catalog.

The catalog manifest lists the presets shipped with the application::

    {
        "version": "1.0.0",
        "totalPresets": 2,
        "categories": ["dancer", "fractal"],
        "presets": [
            {"id": "preset_...", "name": "...", "author": "...", "category": "dancer",
             "type": "FormatA", "assetPath": "presets/dancer/preset_....typeA"}
        ]
    }

:class:`BundledPresetLoader` seeds a :class:`~PresetLibrary.core.repository.PresetRepository`
from the manifest on first launch. The ids that were imported successfully are persisted,
so a later launch retries only the entries that failed.

The module also holds the offline manifest builder used to produce the bundled assets:
:func:`scan_presets` walks a tree of preset files, :func:`summarize` and
:func:`select_curated` pick the bundled subset, and :func:`build_manifest`,
:func:`copy_assets` and :func:`write_manifest` emit it.
"""
import hashlib
import json
import logging
import pathlib
import re
import shutil
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

import pandas as pd

from .model import Preset, PresetMetadata, PresetType, now_str
from .signals import signals
from ..settings import lib
from ..settings.lib import StorageKey
from ..status import status

MANIFEST_VERSION = '1.0.0'
BUNDLED_TAG = 'bundled'
UNCATEGORIZED = 'uncategorized'
UNKNOWN_AUTHOR = 'Unknown'
DEFAULT_PER_CATEGORY = 10

# Source directory names of the curated collection and their category
CATEGORY_MAP: Dict[str, str] = {
    '! Transition': 'transition',
    'Dancer': 'dancer',
    'Drawing': 'drawing',
    'Fractal': 'fractal',
    'Geometric': 'geometric',
    'Hypnotic': 'hypnotic',
    'Particles': 'particles',
    'Reaction': 'reaction',
    'Sparkle': 'sparkle',
    'Supernova': 'supernova',
    'Waveform': 'waveform',
}

ENTRY_FIELDS = ('id', 'name', 'author', 'category', 'type', 'assetPath')

PLACEHOLDER_CONTENT = """[preset00]
fRating=3.000000
fGammaAdj=2.000000
fDecay=0.980000
fVideoEchoZoom=1.000000
fVideoEchoAlpha=0.500000
nVideoEchoOrientation=0
nWaveMode=0
bAdditiveWaves=0
bWaveDots=0
bWaveThick=0
bModWaveAlphaByVolume=0
bMaximizeWaveColor=1
bTexWrap=1
bDarkenCenter=0
bRedBlueStereo=0
bBrighten=0
bDarken=0
bSolarize=0
bInvert=0
fWaveAlpha=0.800000
fWaveScale=1.000000
fWaveSmoothing=0.750000
fWaveParam=0.000000
fModWaveAlphaStart=0.750000
fModWaveAlphaEnd=0.950000
fWarpAnimSpeed=1.000000
fWarpScale=1.000000
fZoomExponent=1.000000
fShader=0.000000
zoom=1.000000
rot=0.000000
cx=0.500000
cy=0.500000
dx=0.000000
dy=0.000000
warp=1.000000
sx=1.000000
sy=1.000000
wave_r=0.500000
wave_g=0.500000
wave_b=0.500000
wave_x=0.500000
wave_y=0.500000
ob_size=0.010000
ob_r=0.000000
ob_g=0.000000
ob_b=0.000000
ob_a=0.000000
ib_size=0.010000
ib_r=0.250000
ib_g=0.250000
ib_b=0.250000
ib_a=0.000000
nMotionVectorsX=12.000000
nMotionVectorsY=9.000000
mv_dx=0.000000
mv_dy=0.000000
mv_l=0.900000
mv_r=1.000000
mv_g=1.000000
mv_b=1.000000
mv_a=0.000000
per_frame_1=wave_r = wave_r + 0.400*( 0.60*sin(0.933*time) + 0.40*sin(1.045*time) );
per_frame_2=wave_g = wave_g + 0.400*( 0.60*sin(0.900*time) + 0.40*sin(0.956*time) );
per_frame_3=wave_b = wave_b + 0.400*( 0.60*sin(0.910*time) + 0.40*sin(0.920*time) );
per_frame_4=zoom = zoom + 0.023*( 0.60*sin(0.339*time) + 0.40*sin(0.276*time) );
per_frame_5=rot = rot + 0.030*( 0.60*sin(0.381*time) + 0.40*sin(0.579*time) );
per_frame_6=cx = cx + 0.110*( 0.60*sin(0.374*time) + 0.40*sin(0.294*time) );
per_frame_7=cy = cy + 0.110*( 0.60*sin(0.393*time) + 0.40*sin(0.223*time) );
"""


def placeholder_content() -> str:
    """Return the generic preset body used when a bundled asset cannot be read."""
    return PLACEHOLDER_CONTENT


@dataclass
class CatalogEntry:
    """One bundled preset listed in the manifest.

    ``size``, ``collection`` and ``source_path`` are only known to the offline builder
    and are not written to the manifest.
    """
    id: str
    name: str
    author: str
    category: str
    type: PresetType
    asset_path: str
    size: int = 0
    collection: str = ''
    source_path: Optional[pathlib.Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'author': self.author,
            'category': self.category,
            'type': self.type.name,
            'assetPath': self.asset_path,
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'CatalogEntry':
        """Parse a manifest entry.

        Raises:
            status.ManifestInvalidException: If a field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise status.ManifestInvalidException(f'Preset entry must be an object, got {type(data).__name__}.')
        for key in ENTRY_FIELDS:
            if not isinstance(data.get(key), str) or not data[key]:
                raise status.ManifestInvalidException(f'Preset entry {data.get("id")!r} has no valid "{key}".')
        try:
            preset_type = PresetType.from_value(data['type'])
        except ValueError as ex:
            raise status.ManifestInvalidException(f'Preset entry {data["id"]!r}: {ex}') from ex
        return cls(
            id=data['id'],
            name=data['name'],
            author=data['author'],
            category=data['category'],
            type=preset_type,
            asset_path=data['assetPath'],
        )


@dataclass
class PresetCatalog:
    """The parsed manifest of bundled presets."""
    version: str = MANIFEST_VERSION
    categories: List[str] = field(default_factory=list)
    entries: List[CatalogEntry] = field(default_factory=list)

    @property
    def total_presets(self) -> int:
        return len(self.entries)

    def entries_by_category(self, category: str) -> List[CatalogEntry]:
        return [e for e in self.entries if e.category == category]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'totalPresets': self.total_presets,
            'categories': list(self.categories),
            'presets': [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'PresetCatalog':
        """Parse and validate a manifest document.

        Raises:
            status.ManifestInvalidException: If the document does not match the manifest schema.
        """
        if not isinstance(data, dict):
            raise status.ManifestInvalidException('The manifest must be a JSON object.')

        version = data.get('version')
        if not isinstance(version, str):
            raise status.ManifestInvalidException('The manifest has no valid "version".')

        categories = data.get('categories', [])
        if not isinstance(categories, list) or not all(isinstance(c, str) for c in categories):
            raise status.ManifestInvalidException('"categories" must be a list of strings.')

        presets = data.get('presets')
        if not isinstance(presets, list):
            raise status.ManifestInvalidException('"presets" must be a list.')

        entries = [CatalogEntry.from_dict(p) for p in presets]
        ids = [e.id for e in entries]
        if len(set(ids)) != len(ids):
            raise status.ManifestInvalidException('The manifest lists the same preset id more than once.')

        total = data.get('totalPresets')
        if not isinstance(total, int) or isinstance(total, bool):
            raise status.ManifestInvalidException('The manifest has no valid "totalPresets".')
        if total != len(entries):
            logging.warning(f'Manifest declares {total} presets but lists {len(entries)}')

        return cls(version=version, categories=list(categories), entries=entries)

    @classmethod
    def from_file(cls, path: Union[str, pathlib.Path]) -> 'PresetCatalog':
        """Read and parse a manifest file.

        Raises:
            status.ManifestInvalidException: If the file is missing or is not valid JSON.
        """
        path = pathlib.Path(path)
        try:
            with path.open('r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError as ex:
            raise status.ManifestInvalidException(f'Manifest not found: {path}') from ex
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as ex:
            raise status.ManifestInvalidException(f'Failed to read manifest {path}: {ex}') from ex
        catalog = cls.from_dict(data)
        logging.debug(f'Read manifest {path}: {catalog.total_presets} presets in {len(catalog.categories)} categories')
        return catalog


def categories(catalog: PresetCatalog) -> List[str]:
    """Return the categories declared by the catalog."""
    return list(catalog.categories)


def entries_by_category(catalog: PresetCatalog, category: str) -> List[CatalogEntry]:
    """Return the catalog entries of one category, in manifest order."""
    return catalog.entries_by_category(category)


@dataclass
class SeedReport:
    """Preset ids processed by one :meth:`BundledPresetLoader.load` pass."""
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class BundledPresetLoader:
    """Seeds a preset repository with the bundled catalog.

    The first pass imports every entry. Its outcome is persisted next to the metadata
    table: the ``bundled-presets-loaded-flag`` record and the list of imported ids. Later
    passes only retry entries that are not in that list.

    Args:
        repository: The repository to seed.
        catalog: The parsed manifest.
        assets_dir: Directory the manifest's ``assetPath`` values are relative to.
    """

    def __init__(self, repository, catalog: PresetCatalog,
                 assets_dir: Optional[Union[str, pathlib.Path]] = None) -> None:
        self.repository = repository
        self.catalog = catalog
        self.assets_dir = pathlib.Path(assets_dir) if assets_dir else None

    @classmethod
    def from_paths(cls, repository, paths: lib.ConfigPaths) -> 'BundledPresetLoader':
        """Create a loader for the manifest shipped in the application's assets directory."""
        return cls(repository, PresetCatalog.from_file(paths.manifest_path), paths.assets_dir)

    async def is_loaded(self) -> bool:
        return bool(await self.repository.get_record(StorageKey.BundledPresetsLoaded, False))

    async def imported_ids(self) -> List[str]:
        value = await self.repository.get_record(StorageKey.BundledPresetsImported, [])
        if not isinstance(value, list):
            logging.warning(f'Record "{StorageKey.BundledPresetsImported}" is not a list, ignoring it')
            return []
        return [str(v) for v in value]

    def read_content(self, entry: CatalogEntry) -> str:
        """Return the bundled content of an entry, or the placeholder body."""
        if self.assets_dir is not None:
            path = self.assets_dir / entry.asset_path
            try:
                return path.read_text(encoding='utf-8')
            except (OSError, UnicodeDecodeError) as ex:
                logging.debug(f'Using placeholder content for "{entry.id}": {ex}')
        return placeholder_content()

    def make_preset(self, entry: CatalogEntry) -> Preset:
        stamp = now_str()
        return Preset(
            id=entry.id,
            name=entry.name,
            author=entry.author,
            type=entry.type,
            content=self.read_content(entry),
            metadata=PresetMetadata(
                created_at=stamp,
                modified_at=stamp,
                is_favorite=False,
                tags=[entry.category, BUNDLED_TAG],
                version=1,
            ),
        )

    async def load(self) -> SeedReport:
        """Import the catalog entries that have not been imported yet.

        A failing entry is logged and skipped. The loaded flag is set after the pass
        whatever the per-entry outcome.
        """
        report = SeedReport()
        imported = await self.imported_ids()
        done = set(imported)

        pending = []
        for entry in self.catalog.entries:
            if entry.id in done:
                report.skipped.append(entry.id)
            else:
                pending.append(entry)

        if not pending and await self.is_loaded():
            logging.debug('Bundled presets already loaded')
            return report

        logging.info(f'Loading {len(pending)} bundled presets ({len(report.skipped)} already imported)')
        for entry in pending:
            if await self.repository.save(self.make_preset(entry)):
                report.succeeded.append(entry.id)
                imported.append(entry.id)
            else:
                logging.error(f'Failed to load bundled preset "{entry.name}": {self.repository.last_status}')
                report.failed.append(entry.id)

        await self.repository.set_record(StorageKey.BundledPresetsImported, imported)
        await self.repository.set_record(StorageKey.BundledPresetsLoaded, True)

        logging.info(f'Bundled presets loaded: {len(report.succeeded)} success, {len(report.failed)} errors')
        signals.bundledPresetsLoaded.emit(len(report.succeeded), len(report.failed))
        return report

    async def reset(self) -> None:
        """Forget the seeding progress so the next :meth:`load` imports every entry again."""
        await self.repository.delete_record(StorageKey.BundledPresetsLoaded)
        await self.repository.delete_record(StorageKey.BundledPresetsImported)
        logging.info('Bundled presets reset, they will be loaded again on the next launch')


# Offline manifest builder

def author_from_filename(filename: str) -> str:
    """Return the author of an ``"Author - Title.ext"`` style filename."""
    match = re.match(r'^([^-_]+)[\s\-_]', filename)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return UNKNOWN_AUTHOR


def title_from_filename(filename: str) -> str:
    """Return the title of an ``"Author - Title.ext"`` style filename."""
    title = re.sub(r'\.(typeA|typeB)$', '', filename)
    index = title.find(' - ')
    if index > 0:
        title = title[index + 3:]
    return title.strip()


def stable_id(relative_path: str, collection: str = '') -> str:
    """Derive a preset id that stays the same across catalog builds."""
    digest = hashlib.sha1(f'{collection}/{relative_path}'.encode('utf-8')).hexdigest()
    return f'preset_{digest[:16]}'


def scan_presets(root: Union[str, pathlib.Path], collection: str = '',
                 category_map: Optional[Dict[str, str]] = None) -> List[CatalogEntry]:
    """Walk a directory tree and list every ``.typeA`` and ``.typeB`` file.

    The category comes from the first directory below ``root``, mapped through
    ``category_map`` when listed there and lower-cased otherwise. Files directly in
    ``root`` are uncategorized.

    Args:
        root: The directory to scan.
        collection: Name of the source collection, part of the generated ids.
        category_map: Maps directory names to category names.

    Returns:
        The entries in path order.
    """
    root = pathlib.Path(root)
    category_map = CATEGORY_MAP if category_map is None else category_map
    extensions = {f'.{t.extension}' for t in PresetType}

    if not root.is_dir():
        logging.error(f'Cannot scan {root}: not a directory')
        return []

    entries = []
    for path in sorted(root.rglob('*')):
        if not path.is_file() or path.suffix not in extensions:
            continue
        relative = path.relative_to(root)
        if len(relative.parts) > 1:
            top = relative.parts[0]
            category = category_map.get(top, top.lower())
        else:
            category = UNCATEGORIZED

        preset_type = PresetType.from_filename(path.name)
        preset_id = stable_id(relative.as_posix(), collection)
        try:
            size = path.stat().st_size
        except OSError as ex:
            logging.warning(f'Skipping {path}: {ex}')
            continue

        entries.append(CatalogEntry(
            id=preset_id,
            name=title_from_filename(path.name),
            author=author_from_filename(path.name),
            category=category,
            type=preset_type,
            asset_path=f'presets/{category}/{preset_id}.{preset_type.extension}',
            size=size,
            collection=collection,
            source_path=path,
        ))

    logging.info(f'Found {len(entries)} presets in {root}')
    return entries


def _entries_frame(entries: Iterable[CatalogEntry]) -> pd.DataFrame:
    columns = ['id', 'name', 'author', 'category', 'type', 'size', 'collection']
    rows = [{k: v for k, v in asdict(e).items() if k in columns} for e in entries]
    return pd.DataFrame(rows, columns=columns)


def summarize(entries: Iterable[CatalogEntry]) -> Dict[str, pd.DataFrame]:
    """Count presets and bytes per collection, category and author.

    Returns:
        A mapping of ``'collection'``, ``'category'`` and ``'author'`` to a DataFrame with
        the grouping column, ``presets`` and ``bytes``, largest group first.
    """
    df = _entries_frame(entries)
    summary = {}
    for key in ('collection', 'category', 'author'):
        grouped = (
            df.groupby(key, sort=False)
            .agg(presets=('id', 'count'), bytes=('size', 'sum'))
            .reset_index()
            .sort_values(['presets', key], ascending=[False, True], kind='stable')
            .reset_index(drop=True)
        )
        summary[key] = grouped
    return summary


def select_curated(entries: Iterable[CatalogEntry], per_category: int = DEFAULT_PER_CATEGORY,
                   categories: Optional[Iterable[str]] = None) -> List[CatalogEntry]:
    """Keep the smallest ``per_category`` presets of each category.

    Args:
        entries: The scanned entries.
        per_category: Number of presets to keep per category.
        categories: Categories to keep, in output order. Defaults to every category
            in order of first appearance.
    """
    entries = list(entries)
    if not entries or per_category <= 0:
        return []

    df = _entries_frame(entries)
    df['position'] = range(len(df))
    order = list(categories) if categories is not None else list(dict.fromkeys(df['category']))

    selected = []
    for category in order:
        subset = df[df['category'] == category]
        subset = subset.sort_values(['size', 'position'], kind='stable').head(per_category)
        selected.extend(entries[i] for i in sorted(subset['position']))
    return selected


def build_manifest(entries: Iterable[CatalogEntry], categories: Optional[Iterable[str]] = None,
                   version: str = MANIFEST_VERSION) -> PresetCatalog:
    """Create a catalog from entries.

    ``categories`` defaults to the entries' categories in order of first appearance.
    """
    entries = list(entries)
    if categories is None:
        categories = dict.fromkeys(e.category for e in entries)
    return PresetCatalog(version=version, categories=list(categories), entries=entries)


def copy_assets(entries: Iterable[CatalogEntry], assets_dir: Union[str, pathlib.Path]) -> int:
    """Copy the source file of each entry to its ``assetPath`` below ``assets_dir``.

    Returns:
        int: The number of files copied.
    """
    assets_dir = pathlib.Path(assets_dir)
    copied = 0
    for entry in entries:
        if entry.source_path is None:
            logging.warning(f'No source file for "{entry.id}", not copying')
            continue
        target = assets_dir / entry.asset_path
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(entry.source_path, target)
        copied += 1
    logging.info(f'Copied {copied} preset files to {assets_dir}')
    return copied


def write_manifest(path: Union[str, pathlib.Path], catalog: PresetCatalog) -> None:
    """Write the catalog as a manifest JSON file."""
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open('w', encoding='utf-8') as f:
        json.dump(catalog.to_dict(), f, indent=2, ensure_ascii=False)
        f.write('\n')
    logging.info(f'Catalog written to: {path}')
