"""
Manifest building and change detection.

A manifest lists every file of a domain at the time of a run together
with its content fingerprint. Building a manifest against the parent
(the latest successful manifest of the same domain) yields a ChangeSet
telling the orchestrator which files actually need transferring.
"""

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import yaml

from .errors import InvalidManifestError, SourceError, ValidationError

logger = logging.getLogger(__name__)

FORMAT_VERSION = '2.0'
MANIFEST_FORMATS = ('json', 'yaml')
HASH_CHUNK_SIZE = 1024 * 1024

REQUIRED_FIELDS = ('formatVersion', 'runId', 'domain', 'createdAt', 'entries')
REQUIRED_ENTRY_FIELDS = ('path', 'sizeBytes', 'fingerprint')


@dataclass(frozen=True)
class ManifestEntry:
    """One file at a point in time."""
    path: str
    size_bytes: int
    fingerprint: str
    modified_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'path': self.path,
            'sizeBytes': self.size_bytes,
            'fingerprint': self.fingerprint,
            'modifiedAt': self.modified_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ManifestEntry':
        return cls(
            path=data['path'],
            size_bytes=int(data['sizeBytes']),
            fingerprint=data['fingerprint'],
            modified_at=data.get('modifiedAt'),
        )


@dataclass(frozen=True)
class Manifest:
    """
    Immutable snapshot of a domain.

    Always holds the complete file list, so restoring from a manifest
    never requires walking its parent chain.
    """
    run_id: str
    domain: str
    created_at: str
    entries: Tuple[ManifestEntry, ...] = ()
    parent_ref: Optional[str] = None
    format_version: str = FORMAT_VERSION

    def entry_map(self) -> Dict[str, ManifestEntry]:
        return {entry.path: entry for entry in self.entries}

    @property
    def file_count(self) -> int:
        return len(self.entries)

    @property
    def total_bytes(self) -> int:
        return sum(entry.size_bytes for entry in self.entries)

    def fingerprints(self) -> set:
        return {entry.fingerprint for entry in self.entries}

    def with_entries(self, entries: Iterable[ManifestEntry]) -> 'Manifest':
        """Copy of this manifest holding the given entries (sorted by path)."""
        return replace(self, entries=tuple(sorted(entries, key=lambda e: e.path)))

    def to_document(self) -> dict:
        return {
            'formatVersion': self.format_version,
            'runId': self.run_id,
            'domain': self.domain,
            'createdAt': self.created_at,
            'parentManifestRef': self.parent_ref,
            'entries': [entry.to_dict() for entry in self.entries],
        }


@dataclass
class ChangeSet:
    """Disjoint added/modified/removed path lists relative to the parent manifest."""
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def to_transfer(self) -> List[str]:
        return self.added + self.modified

    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.removed)

    def summary(self) -> dict:
        return {
            'added': len(self.added),
            'modified': len(self.modified),
            'removed': len(self.removed),
        }


def fingerprint_file(path: str) -> str:
    """SHA-256 of the file's bytes, read in chunks."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def diff(current: Dict[str, ManifestEntry], parent: Optional[Manifest]) -> ChangeSet:
    """
    Compare a fresh walk against the parent manifest.

    Args:
        current: Entries of the new walk keyed by relative path
        parent: Parent manifest, or None for a full backup

    Returns:
        ChangeSet with sorted path lists
    """
    if parent is None:
        return ChangeSet(added=sorted(current))

    previous = parent.entry_map()
    changes = ChangeSet()
    for path in sorted(current):
        old = previous.get(path)
        if old is None:
            changes.added.append(path)
        elif old.fingerprint != current[path].fingerprint:
            changes.modified.append(path)
    changes.removed = sorted(path for path in previous if path not in current)
    return changes


def _utc_iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class ManifestBuilder:
    """
    Walks a domain root and fingerprints every regular file.

    Symbolic links are followed. A directory that is already one of its
    own ancestors (identified by device and inode) is skipped, so link
    cycles terminate; a link to a sibling directory is walked under both
    paths. Files that disappear between listing and hashing are left out
    of the manifest and therefore show up as removed.
    """

    def __init__(self, fingerprint: Callable[[str], str] = fingerprint_file,
                 clock: Callable[[], datetime] = None):
        self.fingerprint = fingerprint
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _walk(self, root: str) -> Iterator[str]:
        stack = [(root, frozenset())]

        while stack:
            directory, ancestors = stack.pop()
            try:
                st = os.stat(directory)
            except OSError:
                continue

            identity = (st.st_dev, st.st_ino)
            if identity in ancestors:
                logger.warning(f"Skipping symlink cycle at {directory}")
                continue
            chain = ancestors | {identity}

            try:
                with os.scandir(directory) as it:
                    children = list(it)
            except FileNotFoundError:
                continue
            except PermissionError as e:
                logger.warning(f"Cannot read directory {directory}: {e}")
                continue

            for child in children:
                try:
                    if child.is_dir(follow_symlinks=True):
                        stack.append((child.path, chain))
                    elif child.is_file(follow_symlinks=True):
                        yield child.path
                except OSError:
                    continue

    def scan(self, domain_root: str) -> Dict[str, ManifestEntry]:
        """
        Fingerprint every file under domain_root.

        Returns:
            Entries keyed by POSIX-style path relative to domain_root

        Raises:
            SourceError: If domain_root is not a directory
        """
        if not os.path.isdir(domain_root):
            raise SourceError(f"Domain root does not exist: {domain_root}")

        entries = {}
        for path in self._walk(domain_root):
            relative = os.path.relpath(path, domain_root).replace(os.sep, '/')
            try:
                st = os.stat(path)
                fingerprint = self.fingerprint(path)
            except FileNotFoundError:
                logger.info(f"File vanished during walk: {relative}")
                continue
            except PermissionError as e:
                logger.warning(f"Skipping unreadable file {relative}: {e}")
                continue

            entries[relative] = ManifestEntry(
                path=relative,
                size_bytes=st.st_size,
                fingerprint=fingerprint,
                modified_at=_utc_iso(st.st_mtime),
            )
        return entries

    def build(self, domain_root: str, parent: Optional[Manifest] = None,
              run_id: str = '', domain: str = '') -> Tuple[Manifest, ChangeSet]:
        """
        Build the manifest of a domain and its change set against parent.

        Args:
            domain_root: Directory to walk
            parent: Latest successful manifest of the same domain, or None
            run_id: Run the manifest belongs to
            domain: Domain name

        Returns:
            (manifest, changeset); the manifest lists every current file
        """
        entries = self.scan(domain_root)
        manifest = Manifest(
            run_id=run_id,
            domain=domain,
            created_at=self.clock().isoformat(),
            entries=tuple(entries[path] for path in sorted(entries)),
            parent_ref=parent.run_id if parent else None,
        )
        return manifest, diff(entries, parent)


def manifest_checksum(document: dict) -> str:
    """SHA-256 over the canonical JSON of every field except the checksum."""
    body = {k: v for k, v in document.items() if k != 'checksum'}
    canonical = json.dumps(body, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def serialize_manifest(manifest: Manifest, fmt: str = 'json') -> bytes:
    """
    Render a manifest as a JSON or YAML document.

    Raises:
        ValidationError: If fmt is not a supported format
    """
    document = manifest.to_document()
    document['checksum'] = manifest_checksum(document)

    if fmt == 'json':
        content = json.dumps(document, indent=2, sort_keys=True)
    elif fmt == 'yaml':
        content = yaml.safe_dump(document, sort_keys=True, default_flow_style=False, allow_unicode=True)
    else:
        raise ValidationError(f"Unsupported manifest format: {fmt}", {'manifest_format': 'must be json or yaml'})
    return content.encode('utf-8')


def parse_manifest(content, fmt: Optional[str] = None) -> Manifest:
    """
    Parse a serialized manifest.

    Args:
        content: Document as bytes or str
        fmt: 'json' or 'yaml'; when omitted the content is parsed as YAML,
            which also accepts JSON

    Returns:
        Manifest

    Raises:
        InvalidManifestError: If the document is malformed or its checksum does not match
    """
    if isinstance(content, bytes):
        content = content.decode('utf-8')

    try:
        document = json.loads(content) if fmt == 'json' else yaml.safe_load(content)
    except (ValueError, yaml.YAMLError) as e:
        raise InvalidManifestError(f"Unreadable manifest: {e}")

    if not isinstance(document, dict):
        raise InvalidManifestError("Manifest must be a mapping")

    missing = [name for name in REQUIRED_FIELDS if name not in document]
    if missing:
        raise InvalidManifestError(f"Manifest is missing fields: {', '.join(missing)}")

    checksum = document.get('checksum')
    if checksum and checksum != manifest_checksum(document):
        raise InvalidManifestError("Manifest checksum verification failed", {'run_id': document['runId']})

    entries = []
    for index, item in enumerate(document['entries'] or []):
        if not isinstance(item, dict) or any(name not in item for name in REQUIRED_ENTRY_FIELDS):
            raise InvalidManifestError(f"Manifest entry {index} is incomplete")
        entries.append(ManifestEntry.from_dict(item))

    return Manifest(
        run_id=document['runId'],
        domain=document['domain'],
        created_at=str(document['createdAt']),
        entries=tuple(entries),
        parent_ref=document.get('parentManifestRef'),
        format_version=str(document['formatVersion']),
    )


def object_key(prefix: str, domain: str, fingerprint: str) -> str:
    """Content-addressed location of a file's bytes."""
    key = f"objects/{domain}/{fingerprint[:2]}/{fingerprint}"
    return f"{prefix}/{key}" if prefix else key


def manifest_key(prefix: str, domain: str, run_id: str, fmt: str) -> str:
    """Location of a run's manifest document for a domain."""
    key = f"manifests/{domain}/{run_id}.{fmt}"
    return f"{prefix}/{key}" if prefix else key


def referenced_keys(prefix: str, manifest: Manifest) -> set:
    """Object keys a manifest depends on."""
    return {object_key(prefix, manifest.domain, entry.fingerprint) for entry in manifest.entries}
