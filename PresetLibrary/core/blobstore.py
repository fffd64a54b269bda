"""
Content blob store for preset text.

Each preset's content lives in its own file, ``<presets_dir>/<id>.<extension>``.
The metadata table never holds content, so listing presets never touches these files.

Writes go through a temporary sibling file which then replaces the target, so an
interrupted write leaves either the old or the new content, never a truncated file.
"""
import logging
import pathlib
from typing import Dict, List, Tuple

from .model import PresetType
from ..status import status

ENCODING = 'utf-8'
TMP_SUFFIX = '.tmp'
UNSAFE_ID_PARTS = ('/', '\\', '\0')


def check_id(preset_id: str) -> None:
    """Check that a preset id can be used as a file name inside the store.

    Raises:
        status.InvalidPresetException: If the id is empty, contains a path separator or
            a NUL character, or is a relative path component.
    """
    if not preset_id or preset_id in ('.', '..') or any(c in preset_id for c in UNSAFE_ID_PARTS):
        raise status.InvalidPresetException(f'Preset id "{preset_id}" is not a valid file name.')


class BlobStore:
    """File-backed store mapping (preset id, type) to the preset's raw text."""

    def __init__(self, root: pathlib.Path) -> None:
        self.root = pathlib.Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f'<BlobStore root={str(self.root)!r}>'

    def path(self, preset_id: str, preset_type: PresetType) -> pathlib.Path:
        """Return the file path holding the content of a preset.

        Raises:
            status.InvalidPresetException: If the id cannot be used as a file name.
        """
        check_id(preset_id)
        return self.root / f'{preset_id}.{preset_type.extension}'

    def exists(self, preset_id: str, preset_type: PresetType) -> bool:
        return self.path(preset_id, preset_type).is_file()

    def read(self, preset_id: str, preset_type: PresetType) -> str:
        """Read a preset's content.

        Raises:
            status.ContentMissingException: If no blob exists for the preset.
            status.IOFailureException: If the file cannot be read.
        """
        path = self.path(preset_id, preset_type)
        if not path.is_file():
            raise status.ContentMissingException(f'No content for preset "{preset_id}" at {path}')
        try:
            return path.read_text(encoding=ENCODING)
        except (OSError, UnicodeDecodeError) as ex:
            raise status.IOFailureException(f'Failed to read {path}: {ex}') from ex

    def write(self, preset_id: str, preset_type: PresetType, content: str) -> None:
        """Write a preset's content, replacing any previous content.

        Raises:
            status.IOFailureException: If the file cannot be written.
        """
        path = self.path(preset_id, preset_type)
        tmp_path = path.with_name(path.name + TMP_SUFFIX)
        try:
            tmp_path.write_text(content, encoding=ENCODING)
            tmp_path.replace(path)
        except OSError as ex:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError as cleanup_ex:
                logging.warning(f'Failed to remove temporary file {tmp_path}: {cleanup_ex}')
            raise status.IOFailureException(f'Failed to write {path}: {ex}') from ex
        logging.debug(f'Wrote {len(content)} characters to {path}')

    def delete(self, preset_id: str, preset_type: PresetType) -> bool:
        """Delete a preset's content. A missing file is not an error.

        Returns:
            bool: True if a file was removed.

        Raises:
            status.IOFailureException: If an existing file cannot be removed.
        """
        path = self.path(preset_id, preset_type)
        if not path.exists():
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as ex:
            raise status.IOFailureException(f'Failed to delete {path}: {ex}') from ex
        logging.debug(f'Deleted {path}')
        return True

    def list_keys(self) -> List[Tuple[str, PresetType]]:
        """Return the (id, type) pair of every stored blob."""
        keys = []
        for preset_type in PresetType:
            for path in sorted(self.root.glob(f'*.{preset_type.extension}')):
                keys.append((path.stem, preset_type))
        return keys


class MemoryBlobStore:
    """In-memory stand-in for :class:`BlobStore` with the same interface."""

    def __init__(self) -> None:
        self._blobs: Dict[Tuple[str, PresetType], str] = {}

    def __repr__(self) -> str:
        return f'<MemoryBlobStore blobs={len(self._blobs)}>'

    def exists(self, preset_id: str, preset_type: PresetType) -> bool:
        return (preset_id, preset_type) in self._blobs

    def read(self, preset_id: str, preset_type: PresetType) -> str:
        try:
            return self._blobs[(preset_id, preset_type)]
        except KeyError:
            raise status.ContentMissingException(f'No content for preset "{preset_id}"') from None

    def write(self, preset_id: str, preset_type: PresetType, content: str) -> None:
        self._blobs[(preset_id, preset_type)] = content

    def delete(self, preset_id: str, preset_type: PresetType) -> bool:
        return self._blobs.pop((preset_id, preset_type), None) is not None

    def list_keys(self) -> List[Tuple[str, PresetType]]:
        return sorted(self._blobs, key=lambda k: (list(PresetType).index(k[1]), k[0]))
