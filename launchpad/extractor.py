"""Safe archive extraction into a private working directory."""

from typing import IO, Callable, Iterator, List, Tuple

import os
import shutil
import tarfile
import zipfile

import structlog
from pydantic import BaseModel

from launchpad.constants import BLOCKED_EXTENSIONS, METADATA_DIRS, METADATA_FILES
from launchpad.exceptions import (
    ArchiveInvalid,
    ExtractionBlocked,
    ExtractionLimitExceeded,
)
from launchpad.settings import MAX_EXTRACTED_SIZE


log = structlog.get_logger()
CHUNK_SIZE = 64 * 1024
Opener = Callable[[], IO[bytes]] | None


class ExtractReport(BaseModel):
    extracted: int = 0
    skipped: List[str] = []
    total_size: int = 0


class Entry(BaseModel):
    name: str
    size: int
    is_dir: bool


def normalize(name: str) -> str:
    return name.replace("\\", "/")


def is_metadata(name: str) -> bool:
    parts = [part for part in normalize(name).split("/") if part]
    if not parts:
        return True
    if any(part in METADATA_DIRS for part in parts):
        return True
    basename = parts[-1]
    return basename.startswith("._") or basename in METADATA_FILES


def resolve_target(root: str, name: str) -> str:
    """Resolve an entry name against the destination root.

    Args:
        root (str): real path of the destination.
        name (str): entry name from the archive.

    Raises:
        ExtractionBlocked: the entry escapes the root or is an executable.

    Returns:
        str: absolute path to write.
    """
    name = normalize(name)
    target = os.path.realpath(os.path.join(root, name))
    if target != root and not target.startswith(root + os.sep):
        raise ExtractionBlocked(f"path traversal: {name}")
    _, suffix = os.path.splitext(name.rstrip("/"))
    if suffix.lower() in BLOCKED_EXTENSIONS:
        raise ExtractionBlocked(f"blocked executable: {name}")
    return target


def _zip_entries(archive: zipfile.ZipFile) -> Iterator[Tuple[Entry, Opener]]:
    for info in archive.infolist():
        entry = Entry(name=info.filename, size=info.file_size, is_dir=info.is_dir())
        yield entry, (lambda info=info: archive.open(info))


def _tar_entries(archive: tarfile.TarFile) -> Iterator[Tuple[Entry, Opener]]:
    for member in archive:
        if not (member.isfile() or member.isdir()):
            # links and device nodes never leave the archive
            yield Entry(name=member.name, size=0, is_dir=False), None
            continue
        entry = Entry(name=member.name, size=member.size, is_dir=member.isdir())
        yield entry, (lambda member=member: archive.extractfile(member))


class _Budget:
    def __init__(self, check_size: bool, limit: int):
        self.check_size = check_size
        self.limit = limit
        self.declared = 0
        self.written = 0

    def declare(self, name: str, size: int):
        self.declared += size
        if self.check_size and self.declared > self.limit:
            raise ExtractionLimitExceeded(
                f"archive declares more than {self.limit // (1024 * 1024)}MB "
                f"of content (reached at {name})"
            )

    def write(self, name: str, size: int):
        self.written += size
        if self.check_size and self.written > self.limit:
            raise ExtractionLimitExceeded(
                f"archive expands beyond {self.limit // (1024 * 1024)}MB "
                f"(reached at {name})"
            )


def _copy(source: IO[bytes], target: str, name: str, budget: _Budget) -> int:
    size = 0
    with source, open(target, "wb") as file:
        while chunk := source.read(CHUNK_SIZE):
            budget.write(name, len(chunk))
            file.write(chunk)
            size += len(chunk)
    return size


def _extract_entries(entries, root: str, budget: _Budget) -> ExtractReport:
    report = ExtractReport()
    for entry, opener in entries:
        if is_metadata(entry.name):
            continue
        try:
            target = resolve_target(root, entry.name)
            if opener is None:
                raise ExtractionBlocked(f"unsupported entry type: {entry.name}")
        except ExtractionBlocked as e:
            log.warning(f"skip archive entry: {e}")
            report.skipped.append(normalize(entry.name))
            continue
        if entry.is_dir:
            os.makedirs(target, exist_ok=True)
            continue
        budget.declare(entry.name, entry.size)
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            report.total_size += _copy(opener(), target, entry.name, budget)
            report.extracted += 1
        except ExtractionLimitExceeded:
            raise
        except (OSError, zipfile.BadZipFile, tarfile.TarError, EOFError) as e:
            log.warning(f"failed to extract {entry.name}: {e}")
            report.skipped.append(normalize(entry.name))
    return report


def extract(
    archive_path: str,
    destination: str,
    check_size: bool = False,
    limit: int = MAX_EXTRACTED_SIZE,
) -> ExtractReport:
    """Unpack a zip or tar archive.

    Entries escaping the destination, executables and platform metadata are
    skipped; per entry read or write failures are logged and skipped.

    Args:
        archive_path (str): uploaded archive.
        destination (str): private working directory, created if missing.
        check_size (bool): enforce ``limit`` on the extracted content.
        limit (int): ceiling in bytes.

    Raises:
        ArchiveInvalid: neither a zip nor a tar archive.
        ExtractionLimitExceeded: size ceiling exceeded, destination removed.

    Returns:
        ExtractReport: counters and skipped entry names.
    """
    os.makedirs(destination, exist_ok=True)
    root = os.path.realpath(destination)
    budget = _Budget(check_size, limit)
    try:
        if zipfile.is_zipfile(archive_path):
            with zipfile.ZipFile(archive_path, "r") as archive:
                report = _extract_entries(_zip_entries(archive), root, budget)
        elif tarfile.is_tarfile(archive_path):
            with tarfile.open(archive_path, mode="r:*") as archive:
                report = _extract_entries(_tar_entries(archive), root, budget)
        else:
            raise ArchiveInvalid(f"{os.path.basename(archive_path)} is not a zip or tar archive")
    except ExtractionLimitExceeded:
        shutil.rmtree(destination, ignore_errors=True)
        raise
    except (zipfile.BadZipFile, tarfile.TarError) as e:
        raise ArchiveInvalid(f"unreadable archive: {e}") from e
    log.info(
        f"extracted {report.extracted} files ({report.total_size} bytes) "
        f"to {destination}, skipped {len(report.skipped)}"
    )
    return report
