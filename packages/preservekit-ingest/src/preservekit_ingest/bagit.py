"""Readers for the BagIt text files the ingest pipeline cares about.

Manifests are ``<digest> <path>`` lines; tag files are ``Label: value``
lines with indented continuation lines.  Both readers raise ``ValueError``
on a line they cannot interpret.
"""

from __future__ import annotations

from typing import Iterable

from preservekit_core.errors import ErrorCode, IngestException
from preservekit_core.models import Tag


def tar_path_to_bag_path(tar_path: str) -> str:
    """Strip the bag's top-level directory from a tar entry name.

    Raises ``IngestException`` (fatal) when the entry is not inside a
    top-level directory.
    """
    name = tar_path[2:] if tar_path.startswith("./") else tar_path
    prefix, sep, path_in_bag = name.partition("/")
    if not sep or not prefix or not path_in_bag:
        raise IngestException(
            code=ErrorCode.E_BAG_ILLEGAL_PATH,
            message=f"Illegal path, '{tar_path}'. Should start with '{prefix or tar_path}/'.",
            stage="scan",
            is_fatal=True,
        )
    return path_in_bag


def parse_manifest(lines: Iterable[str]) -> list[tuple[str, str]]:
    """Return ``(digest, path_in_bag)`` pairs from manifest lines."""
    entries: list[tuple[str, str]] = []
    for lineno, raw in enumerate(lines, start=1):
        line = raw.rstrip("\r\n")
        if not line.strip():
            continue
        parts = line.split(None, 1)
        if len(parts) != 2:
            raise ValueError(f"line {lineno}: expected '<digest> <path>', got {line!r}")
        digest, path = parts
        # sha*sum binary-mode marker
        if path.startswith("*"):
            path = path[1:]
        entries.append((digest.lower(), path.strip()))
    return entries


def parse_tag_file(lines: Iterable[str], source_file: str) -> list[Tag]:
    """Return the tags in a ``Label: value`` tag file.

    Lines that begin with whitespace continue the previous value.
    """
    tags: list[Tag] = []
    for lineno, raw in enumerate(lines, start=1):
        line = raw.rstrip("\r\n")
        if not line.strip():
            continue
        if line[0] in " \t":
            if not tags:
                raise ValueError(f"line {lineno}: continuation line with no preceding tag")
            last = tags[-1]
            last.value = f"{last.value} {line.strip()}".strip()
            continue
        label, sep, value = line.partition(":")
        if not sep or not label.strip():
            raise ValueError(f"line {lineno}: expected 'Label: value', got {line!r}")
        tags.append(Tag(source_file=source_file, label=label.strip(), value=value.strip()))
    return tags
