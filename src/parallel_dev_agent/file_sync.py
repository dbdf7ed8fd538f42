"""One-way, gitignore-aware directory mirroring.

Used to deploy a session worktree into an environment directory. Both
trees are walked lazily, so neither is held in memory.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional, Union

logger = logging.getLogger(__name__)

GIT_DIR = ".git"


@lru_cache(maxsize=None)
def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Compile a slash-separated glob into a regex over relative POSIX paths.

    ``**`` spans directories, ``*`` and ``?`` stay within one path segment.
    """
    i, n = 0, len(pattern)
    parts = []
    while i < n:
        c = pattern[i]
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif c == "*":
            parts.append("[^/]*")
            i += 1
        elif c == "?":
            parts.append("[^/]")
            i += 1
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(c))
                i += 1
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append(f"[{body}]")
                i = end + 1
        else:
            parts.append(re.escape(c))
            i += 1
    return re.compile("".join(parts) + r"\Z")


@dataclass(frozen=True)
class IgnoreRule:
    """One compiled pattern; ``include`` rules re-include matching paths."""
    source: str
    globs: tuple[str, ...]
    include: bool = False

    def matches(self, relative_path: str) -> bool:
        return any(glob_to_regex(g).match(relative_path) for g in self.globs)


def convert_gitignore_pattern(pattern: str) -> tuple[str, ...]:
    """Translate one .gitignore pattern into globs relative to the root.

    - ``dir/`` matches the directory and everything under it
    - a name without a slash matches at any depth
    - a leading ``/`` (or any inner slash) anchors to the root
    """
    dir_only = pattern.endswith("/")
    pattern = pattern.rstrip("/")

    if pattern.startswith("/"):
        base = pattern.lstrip("/")
    elif "/" in pattern or pattern.startswith("**"):
        base = pattern
    else:
        base = f"**/{pattern}"

    if dir_only:
        return (f"{base}/**",)
    return (base, f"{base}/**")


class IgnoreRules:
    """Ordered ignore rules; the last matching rule decides."""

    def __init__(self, rules: Iterable[IgnoreRule] = ()):
        self.rules = list(rules)

    @classmethod
    def from_lines(cls, lines: Iterable[str]) -> "IgnoreRules":
        rules = []
        for line in lines:
            pattern = line.strip()
            if not pattern or pattern.startswith("#"):
                continue
            include = pattern.startswith("!")
            if include:
                pattern = pattern[1:]
            if not pattern.strip("/"):
                continue
            rules.append(IgnoreRule(pattern, convert_gitignore_pattern(pattern), include))
        return cls(rules)

    @classmethod
    def from_directory(cls, root: Union[str, Path]) -> "IgnoreRules":
        """Load rules from ``root/.gitignore`` if present."""
        gitignore = Path(root) / ".gitignore"
        if not gitignore.is_file():
            return cls()
        return cls.from_lines(gitignore.read_text(encoding="utf-8", errors="replace").splitlines())

    @property
    def has_includes(self) -> bool:
        return any(rule.include for rule in self.rules)

    def is_ignored(self, relative_path: str, is_dir: bool = False) -> bool:
        """Evaluate a relative POSIX path against the rules.

        ``.git`` is always ignored, whatever the rules say.
        """
        segments = relative_path.split("/")
        if GIT_DIR in segments:
            return True

        candidate = f"{relative_path}/" if is_dir else relative_path
        ignored = False
        for rule in self.rules:
            if rule.matches(candidate):
                ignored = not rule.include
        return ignored


@dataclass
class SyncReport:
    """What a sync pass did."""
    copied: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)


def _needs_copy(source: Path, destination: Path) -> bool:
    try:
        dest_stat = destination.stat()
    except FileNotFoundError:
        return True
    src_stat = source.stat()
    return src_stat.st_mtime > dest_stat.st_mtime or src_stat.st_size != dest_stat.st_size


class DirectorySynchronizer:
    """Mirrors a source tree onto a destination tree."""

    def __init__(self, rules: Optional[IgnoreRules] = None):
        """Initialize the synchronizer.

        Args:
            rules: Fixed ignore rules; when omitted they are read from the
                source's .gitignore on every sync
        """
        self._fixed_rules = rules

    def _iter_source_files(self, source: Path, rules: IgnoreRules):
        """Yield relative POSIX paths of every non-ignored source file."""
        prune_ignored_dirs = not rules.has_includes
        for dirpath, dirnames, filenames in os.walk(source):
            rel_dir = Path(dirpath).relative_to(source).as_posix()
            prefix = "" if rel_dir == "." else f"{rel_dir}/"

            kept = []
            for name in sorted(dirnames):
                rel = f"{prefix}{name}"
                if name == GIT_DIR:
                    continue
                if prune_ignored_dirs and rules.is_ignored(rel, is_dir=True):
                    continue
                kept.append(name)
            dirnames[:] = kept

            for name in sorted(filenames):
                rel = f"{prefix}{name}"
                if not rules.is_ignored(rel):
                    yield rel

    def sync(
        self,
        destination: Union[str, Path],
        source: Union[str, Path],
        delete_extra: bool = True,
    ) -> SyncReport:
        """Copy new and changed files from source to destination.

        A file is copied when it is missing from the destination, newer in
        the source, or differs in size. With ``delete_extra`` destination
        files that do not correspond to a synced source file are removed
        (``.git`` is never touched) and empty directories pruned.

        Raises:
            FileNotFoundError: The source directory does not exist
        """
        source = Path(source).resolve()
        destination = Path(destination).resolve()
        if not source.is_dir():
            raise FileNotFoundError(f"Source directory not found: {source}")
        destination.mkdir(parents=True, exist_ok=True)

        rules = self._fixed_rules or IgnoreRules.from_directory(source)
        report = SyncReport()
        logger.info(f"Syncing {source} -> {destination}")

        for rel in self._iter_source_files(source, rules):
            src_file = source / rel
            dest_file = destination / rel
            try:
                if not _needs_copy(src_file, dest_file):
                    report.skipped += 1
                    continue
                dest_file.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src_file, dest_file)
                report.copied += 1
            except OSError as e:
                logger.error(f"Error copying {src_file} to {dest_file}: {e}")
                report.errors.append(f"{rel}: {e}")

        if delete_extra:
            self._delete_extra(source, destination, rules, report)
            self._prune_empty_dirs(destination, report)

        logger.info(
            f"Sync done: {report.copied} copied, {report.skipped} unchanged, "
            f"{report.deleted} deleted, {len(report.errors)} errors"
        )
        return report

    def _delete_extra(
        self, source: Path, destination: Path, rules: IgnoreRules, report: SyncReport
    ) -> None:
        for dirpath, dirnames, filenames in os.walk(destination):
            dirnames[:] = [d for d in dirnames if d != GIT_DIR]
            rel_dir = Path(dirpath).relative_to(destination).as_posix()
            prefix = "" if rel_dir == "." else f"{rel_dir}/"

            for name in filenames:
                if name == GIT_DIR:
                    continue
                rel = f"{prefix}{name}"
                if (source / rel).is_file() and not rules.is_ignored(rel):
                    continue
                try:
                    (destination / rel).unlink()
                    report.deleted += 1
                except OSError as e:
                    logger.error(f"Error deleting {destination / rel}: {e}")
                    report.errors.append(f"{rel}: {e}")

    def _prune_empty_dirs(self, destination: Path, report: SyncReport) -> None:
        # Bottom-up walk visits the deepest directories first
        for dirpath, dirnames, filenames in os.walk(destination, topdown=False):
            path = Path(dirpath)
            if path == destination or GIT_DIR in path.relative_to(destination).parts:
                continue
            try:
                if not any(path.iterdir()):
                    path.rmdir()
            except OSError as e:
                logger.warning(f"Could not remove empty directory {path}: {e}")
                report.errors.append(f"{path.relative_to(destination).as_posix()}: {e}")
