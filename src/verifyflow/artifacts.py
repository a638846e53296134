from __future__ import annotations

import gzip
import hashlib
import json
import logging
import os
import shutil
import tarfile
import tempfile
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path, PurePosixPath

from verifyflow.domain import ArtifactRef
from verifyflow.errors import ArtifactConflict, ArtifactError, ArtifactNotFound

LOGGER = logging.getLogger(__name__)

_MANIFEST_NAME = ".artifact.json"
_ARCHIVE_EXCLUDES = frozenset({".git", "__pycache__"})


def _safe_component(value: str) -> str:
    return "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in value)


def _check_member(member: str) -> str:
    path = PurePosixPath(member)
    if path.is_absolute() or ".." in path.parts or not path.parts or member == _MANIFEST_NAME:
        raise ArtifactError(f"invalid artifact member name '{member}'")
    return path.as_posix()


def _digest(content: Mapping[str, bytes]) -> str:
    hasher = hashlib.sha256()
    for member in sorted(content):
        hasher.update(member.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(content[member])
    return hasher.hexdigest()


class ArtifactStore:
    """Directory-backed store of named, immutable pipeline artifacts.

    An artifact is keyed by ``(producer, name)`` where ``producer`` is the id
    of the publishing job run. Content is staged in a scratch directory and
    renamed into place, so readers only ever see complete artifacts. Writers
    for the same key serialize on a per-key lock; readers take no lock.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._staging = self.root / ".staging"
        self._staging.mkdir(exist_ok=True)
        self._refs: dict[tuple[str, str], ArtifactRef] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def _path_for(self, producer: str, name: str) -> Path:
        return self.root / _safe_component(producer) / _safe_component(name)

    def publish(
        self,
        producer: str,
        name: str,
        content: bytes | Mapping[str, bytes],
    ) -> ArtifactRef:
        """Publish ``content`` under ``name``; raw bytes are stored as a file named ``name``."""
        members = {name: content} if isinstance(content, bytes) else dict(content)
        if not members:
            raise ArtifactError(f"artifact '{name}' has no content")
        members = {_check_member(member): data for member, data in members.items()}

        key = (producer, name)
        final = self._path_for(producer, name)
        with self._lock_for(key):
            if key in self._refs or final.exists():
                raise ArtifactConflict(producer=producer, name=name)
            ref = ArtifactRef(
                name=name,
                producer=producer,
                files=tuple(sorted(members)),
                digest=_digest(members),
            )
            staging = Path(tempfile.mkdtemp(prefix="publish_", dir=self._staging))
            try:
                for member, data in members.items():
                    target = staging / member
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_bytes(data)
                (staging / _MANIFEST_NAME).write_text(
                    json.dumps(ref.to_dict(), indent=2, sort_keys=True), encoding="utf-8"
                )
                final.parent.mkdir(parents=True, exist_ok=True)
                os.rename(staging, final)
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise
            self._refs[key] = ref
        LOGGER.info("published artifact '%s' from '%s' (%d files)", name, producer, len(ref.files))
        return ref

    def publish_paths(
        self,
        producer: str,
        name: str,
        paths: Iterable[Path],
        *,
        base: Path | None = None,
    ) -> ArtifactRef:
        """Publish files from disk; directories are walked recursively."""
        content: dict[str, bytes] = {}
        for path in paths:
            path = Path(path)
            if path.is_dir():
                root = base or path
                for child in sorted(path.rglob("*")):
                    if child.is_file():
                        content[child.relative_to(root).as_posix()] = child.read_bytes()
            elif path.is_file():
                member = path.relative_to(base).as_posix() if base else path.name
                content[member] = path.read_bytes()
            else:
                raise ArtifactError(f"cannot publish missing path '{path}' as '{name}'")
        return self.publish(producer, name, content)

    def refs(self) -> tuple[ArtifactRef, ...]:
        return tuple(self._refs.values())

    def resolve(self, name: str) -> ArtifactRef:
        matches = [ref for ref in self._refs.values() if ref.name == name]
        if not matches:
            raise ArtifactNotFound(name=name)
        if len(matches) > 1:
            producers = ", ".join(sorted(ref.producer for ref in matches))
            raise ArtifactError(f"artifact '{name}' is ambiguous: published by {producers}")
        return matches[0]

    def fetch(self, ref: ArtifactRef) -> dict[str, bytes]:
        known = self._refs.get((ref.producer, ref.name))
        final = self._path_for(ref.producer, ref.name)
        if known is None or not final.is_dir():
            raise ArtifactNotFound(name=ref.name, producer=ref.producer)
        return {member: (final / member).read_bytes() for member in known.files}

    def fetch_bytes(self, ref: ArtifactRef) -> bytes:
        content = self.fetch(ref)
        if len(content) != 1:
            raise ArtifactError(f"artifact '{ref.name}' holds {len(content)} files, expected one")
        return next(iter(content.values()))

    def materialize(self, ref: ArtifactRef, dest: str | Path) -> list[Path]:
        dest_dir = Path(dest)
        written: list[Path] = []
        for member, data in self.fetch(ref).items():
            target = dest_dir / member
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            written.append(target)
        return written


def create_source_archive(
    source_dir: str | Path,
    project: str,
    version: str,
    output_dir: str | Path,
) -> Path:
    """Pack ``source_dir`` as ``<project>-<version>.tar.gz``.

    Every member sits below a single ``<project>-<version>/`` directory so that
    consumers unpack it with ``tar xzf <project>*.tar.gz --strip 1``. Entries are
    sorted and owner/mtime data is zeroed, making the archive reproducible.
    """
    source = Path(source_dir).expanduser().resolve()
    if not source.is_dir():
        raise ArtifactError(f"source directory does not exist: '{source}'")
    prefix = f"{project}-{version}"
    out_dir = Path(output_dir).expanduser().resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    archive_path = out_dir / f"{prefix}.tar.gz"

    def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        info.mtime = 0
        return info

    fd, tmp_name = tempfile.mkstemp(dir=out_dir, suffix=".tmp")
    os.close(fd)
    try:
        with open(tmp_name, "wb") as raw, gzip.GzipFile(
            filename="", mode="wb", fileobj=raw, mtime=0
        ) as gz, tarfile.open(fileobj=gz, mode="w") as tar:
            tar.add(source, arcname=prefix, recursive=False, filter=_normalize)
            for path in sorted(source.rglob("*")):
                relative = path.relative_to(source)
                if _ARCHIVE_EXCLUDES.intersection(relative.parts):
                    continue
                if out_dir == path or out_dir in path.parents:
                    continue
                tar.add(
                    path,
                    arcname=f"{prefix}/{relative.as_posix()}",
                    recursive=False,
                    filter=_normalize,
                )
        os.replace(tmp_name, archive_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    LOGGER.info("created source archive %s", archive_path)
    return archive_path
