"""Preset records and helpers shared by the storage layers.

Defines the preset, its metadata and preset collections, the two content dialects,
and helpers to generate ids and timestamps. Records serialize to the camelCase
dictionaries used by the exported and bundled preset documents.
"""
import copy
import datetime
import enum
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

ID_ALPHABET = string.digits + string.ascii_lowercase
ID_SUFFIX_LENGTH = 9


class PresetType(enum.StrEnum):
    """The two historical preset content dialects.

    The value is used as the file extension of the preset's content.
    """
    FormatA = 'typeA'
    FormatB = 'typeB'

    @property
    def extension(self) -> str:
        return self.value

    @classmethod
    def from_filename(cls, filename: str) -> 'PresetType':
        """Infer the dialect from a filename: ``.typeB`` is FormatB, anything else FormatA."""
        if filename.endswith(f'.{cls.FormatB.extension}'):
            return cls.FormatB
        return cls.FormatA

    @classmethod
    def from_value(cls, value: Any) -> 'PresetType':
        """Parse a stored value, accepting both the member name and the extension.

        Raises:
            ValueError: If the value names neither dialect.
        """
        if isinstance(value, cls):
            return value
        for member in cls:
            if value in (member.name, member.value):
                return member
        raise ValueError(f'Unknown preset type: {value!r}')


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec='microseconds')


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    dt = datetime.datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


def generate_id(prefix: str = 'preset') -> str:
    """Return a new unique id, e.g. ``preset_1718000000000_k3j9x0a1b``."""
    suffix = ''.join(random.choices(ID_ALPHABET, k=ID_SUFFIX_LENGTH))
    return f'{prefix}_{time.time_ns() // 1_000_000}_{suffix}'


def unique_tags(tags) -> List[str]:
    """De-duplicate tags, keeping their first-seen order."""
    return list(dict.fromkeys(str(t) for t in tags or ()))


@dataclass
class PresetMetadata:
    """Everything about a preset except its name, author, type and content."""
    created_at: str = field(default_factory=now_str)
    modified_at: str = field(default_factory=now_str)
    is_favorite: bool = False
    tags: List[str] = field(default_factory=list)
    version: int = 1
    custom_colors: Optional[bool] = None

    def __post_init__(self) -> None:
        self.tags = unique_tags(self.tags)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'createdAt': self.created_at,
            'modifiedAt': self.modified_at,
            'isFavorite': self.is_favorite,
            'tags': list(self.tags),
            'version': self.version,
        }
        if self.custom_colors is not None:
            data['customColors'] = self.custom_colors
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PresetMetadata':
        return cls(
            created_at=data['createdAt'],
            modified_at=data['modifiedAt'],
            is_favorite=bool(data.get('isFavorite', False)),
            tags=list(data.get('tags', [])),
            version=int(data.get('version', 1)),
            custom_colors=data.get('customColors'),
        )


@dataclass
class Preset:
    """A named visual-effect document.

    ``content`` is owned by the content blob store; presets listed from the metadata
    table carry an empty string.
    """
    id: str
    name: str
    author: str
    type: PresetType
    content: str = ''
    metadata: PresetMetadata = field(default_factory=PresetMetadata)

    @classmethod
    def new(cls, name: str, author: str, content: str,
            type: PresetType = PresetType.FormatA,
            tags: Optional[List[str]] = None) -> 'Preset':
        """Create a preset with a fresh id and timestamps."""
        stamp = now_str()
        return cls(
            id=generate_id('preset'),
            name=name,
            author=author,
            type=type,
            content=content,
            metadata=PresetMetadata(created_at=stamp, modified_at=stamp, tags=tags or []),
        )

    @property
    def filename(self) -> str:
        return f'{self.id}.{self.type.extension}'

    def copy(self) -> 'Preset':
        return copy.deepcopy(self)

    def matches(self, query: str) -> bool:
        """Case-insensitive substring test against name, author and each tag."""
        q = query.lower()
        if q in self.name.lower() or q in self.author.lower():
            return True
        return any(q in tag.lower() for tag in self.metadata.tags)

    def to_dict(self, include_content: bool = True) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'author': self.author,
            'type': self.type.name,
            'metadata': self.metadata.to_dict(),
        }
        if include_content:
            data['content'] = self.content
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Preset':
        """Build a preset from its dictionary form.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If the type is unknown.
        """
        return cls(
            id=data['id'],
            name=data['name'],
            author=data['author'],
            type=PresetType.from_value(data['type']),
            content=data.get('content', ''),
            metadata=PresetMetadata.from_dict(data['metadata']),
        )


@dataclass
class PresetCollection:
    """A named, ordered group of preset ids. Ids are soft references."""
    id: str
    name: str
    preset_ids: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=now_str)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'presetIds': list(self.preset_ids),
            'createdAt': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PresetCollection':
        return cls(
            id=data['id'],
            name=data['name'],
            preset_ids=list(data.get('presetIds', [])),
            created_at=data['createdAt'],
        )
