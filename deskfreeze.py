#!/usr/bin/env python3
"""
Desktop Freeze (deskfreeze)

Capture the Desktop, media folders, launcher/dock configuration and trash into
a snapshot, arm it to be restored at next boot, and roll the live state back
to it on demand.
"""
from __future__ import annotations

import argparse
import fcntl
import json
import os
import pwd
import re
import shlex
import shutil
import subprocess
import sys
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, IO, Iterator, List, Optional, Sequence, Tuple


BASE_SNAPSHOT_DIR = ".snapshot_manager"
SNAPSHOT_MANIFEST_NAME = "snapshot.manifest"
BOOT_TRIGGER_FILENAME = "restore_on_boot.flag"
DESKTOP_FILES_DIR = "DesktopFiles"
ICON_CONFIGS_DIR = "IconConfigs"
TRASH_BACKUP_DIR = "TrashBackup"
TRASH_SUBDIRS = ("files", "info")

ICON_POSITION_KEY = "metadata::dde-file-manager-icon-position"
POSITION_PATTERN = re.compile(r"(\d+,\d+)")

MEDIA_FOLDERS = ["Videos", "Pictures", "Documents", "Music"]

# Launcher/dock state captured alongside the desktop. Paths are relative to the
# user's home directory unless absolute.
LAUNCHER_CONFIG_PATHS = [
    ".config/deepin/dde-launcher",
    ".config/deepin/dde-dock",
    ".local/share/applications",
]
SYSTEM_APPLICATION_DIRS = ["/usr/share/applications"]

OWNER_UNSET = "unset"
OWNER_USER = "user"
OWNER_ROOT = "root"

RESTORE_SETTLE_DELAY = 1.0


def info(message: str) -> None:
    print(f"[+] {message}")


def warn(message: str) -> None:
    print(f"[!] {message}")


def debug(message: str, verbose: bool) -> None:
    if verbose:
        print(f"[debug] {message}")


class DeskfreezeError(RuntimeError):
    """Base exception for snapshot and restore failures."""


class HomeNotFoundError(DeskfreezeError):
    pass


class UnknownTargetError(DeskfreezeError):
    pass


class SnapshotMissingError(DeskfreezeError):
    pass


class SnapshotBusyError(DeskfreezeError):
    pass


def get_home() -> Path:
    """Allow overriding home for tests via DESKFREEZE_HOME."""
    env_home = os.environ.get("DESKFREEZE_HOME") or os.environ.get("HOME")
    if not env_home:
        raise HomeNotFoundError("Cannot determine the home directory: HOME is not set.")
    return Path(env_home).expanduser()


@dataclass(frozen=True)
class Identity:
    uid: int
    gid: int


ROOT_IDENTITY = Identity(0, 0)


def resolve_acting_identity(home: Path) -> Identity:
    """Return the real user behind this process, even when it runs elevated.

    sudo and pkexec both record the caller in the environment. A root process
    started without either (a boot-time service) acts on behalf of whoever
    owns the home directory.
    """
    sudo_uid = os.environ.get("SUDO_UID")
    sudo_gid = os.environ.get("SUDO_GID")
    if sudo_uid and sudo_gid:
        return Identity(int(sudo_uid), int(sudo_gid))

    pkexec_uid = os.environ.get("PKEXEC_UID")
    if pkexec_uid:
        uid = int(pkexec_uid)
        try:
            gid = pwd.getpwuid(uid).pw_gid
        except KeyError:
            gid = uid
        return Identity(uid, gid)

    uid, gid = os.getuid(), os.getgid()
    if uid == 0:
        try:
            st = home.stat()
        except OSError:
            return Identity(uid, gid)
        return Identity(st.st_uid, st.st_gid)
    return Identity(uid, gid)


@dataclass(frozen=True)
class SourceLocation:
    path: str
    dereference: bool = False
    owner: str = OWNER_UNSET

    @property
    def privileged(self) -> bool:
        return self.path.startswith("/")


@dataclass(frozen=True)
class TargetPolicy:
    name: str
    sources: Tuple[SourceLocation, ...]
    captures_trash: bool = False
    auxiliary: Tuple[SourceLocation, ...] = ()
    uses_manifest: bool = False


def _location(path: str, dereference: bool = False) -> SourceLocation:
    owner = OWNER_ROOT if path.startswith("/") else OWNER_USER
    return SourceLocation(path, dereference, owner)


def _auxiliary_locations() -> Tuple[SourceLocation, ...]:
    locations = [_location(p, dereference="dde-launcher" in p) for p in LAUNCHER_CONFIG_PATHS]
    locations.extend(_location(p, dereference=True) for p in SYSTEM_APPLICATION_DIRS)
    return tuple(locations)


# Targets that can be frozen. New targets and auxiliary locations go here.
TARGET_POLICIES: Dict[str, TargetPolicy] = {
    "desktop": TargetPolicy(
        name="desktop",
        sources=(_location("Desktop"),),
        captures_trash=True,
        auxiliary=_auxiliary_locations(),
        uses_manifest=True,
    ),
    "home_folders": TargetPolicy(
        name="home_folders",
        sources=tuple(_location(folder) for folder in MEDIA_FOLDERS),
    ),
}

SUPPORTED_TARGETS: List[str] = list(TARGET_POLICIES)


@dataclass
class SnapshotLayout:
    """On-disk locations for snapshots, all derived from one home directory."""

    home: Path

    @property
    def root(self) -> Path:
        return self.home / BASE_SNAPSHOT_DIR

    @property
    def trash(self) -> Path:
        return self.home / ".local/share/Trash"

    def target_dir(self, target: str) -> Path:
        return self.root / target

    def trigger_file(self, target: str) -> Path:
        return self.target_dir(target) / BOOT_TRIGGER_FILENAME

    def manifest_file(self, target: str) -> Path:
        return self.target_dir(target) / SNAPSHOT_MANIFEST_NAME

    def lock_file(self, target: str) -> Path:
        # Kept outside the snapshot root, which is deleted wholesale.
        return self.home / ".cache" / "deskfreeze" / f"{target}.lock"

    def resolve(self, location_path: str) -> Path:
        if location_path.startswith("/"):
            return Path(location_path)
        return self.home / location_path

    def mirror(self, target: str, location_path: str) -> Path:
        return self.target_dir(target) / ICON_CONFIGS_DIR / location_path.lstrip("/")


def missing_parents(path: Path) -> List[Path]:
    """List path and its ancestors that do not exist yet, deepest first."""
    missing: List[Path] = []
    current = path
    while not os.path.lexists(current):
        missing.append(current)
        if current.parent == current:
            break
        current = current.parent
    return missing


def ensure_directory(path: Path, owner: Optional[Identity] = None, verbose: bool = False) -> None:
    created = missing_parents(path)
    path.mkdir(parents=True, exist_ok=True)
    if owner is None:
        return
    for directory in created:
        try:
            os.lchown(directory, owner.uid, owner.gid)
        except OSError as exc:
            debug(f"chown failed for {directory}: {exc}", verbose)


def remove_path(path: Path) -> None:
    """Delete a file, symlink or directory tree without following links."""
    if not os.path.lexists(path):
        return
    if path.is_symlink() or not path.is_dir():
        path.unlink()
    else:
        shutil.rmtree(path)


def clear_directory(directory: Path, verbose: bool = False) -> bool:
    """Empty a directory in place, keeping the directory itself."""
    ok = True
    for child in sorted(directory.iterdir()):
        try:
            remove_path(child)
            debug(f"Removed {child}", verbose)
        except OSError as exc:
            warn(f"Failed to remove {child}: {exc}")
            ok = False
    return ok


def apply_ownership(path: Path, owner: Identity, verbose: bool = False, follow_root: bool = False) -> int:
    """Recursively lchown path to owner without following links.

    With follow_root, a symlinked path is descended into; links below it are
    still never followed.

    Returns the number of entries whose ownership could not be changed.
    """
    paths: List[str] = [str(path)]
    if path.is_dir() and (follow_root or not path.is_symlink()):
        for root, dirs, files in os.walk(path):
            paths.extend(os.path.join(root, name) for name in dirs + files)

    failures = 0
    for item in paths:
        try:
            os.lchown(item, owner.uid, owner.gid)
        except OSError as exc:
            failures += 1
            debug(f"chown failed for {item}: {exc}", verbose)
    return failures


def copy_entry(source: Path, destination: Path, dereference: bool, verbose: bool = False) -> None:
    """Copy a single directory entry, replacing whatever is at destination.

    Raises OSError (including shutil.Error) when the entry cannot be copied.
    """
    if source.is_symlink() and not dereference:
        remove_path(destination)
        os.symlink(os.readlink(source), destination)
        debug(f"Copied symlink {source} -> {destination}", verbose)
        return

    if source.is_dir():
        remove_path(destination)
        shutil.copytree(
            source,
            destination,
            symlinks=not dereference,
            ignore_dangling_symlinks=True,
        )
        debug(f"Copied directory {source} -> {destination}", verbose)
        return

    if not source.exists():
        raise FileNotFoundError(f"Dangling symlink cannot be dereferenced: {source}")
    remove_path(destination)
    shutil.copy2(source, destination)
    debug(f"Copied file {source} -> {destination}", verbose)


def copy_tree(
    source: Path,
    destination: Path,
    dereference: bool = False,
    owner: Optional[Identity] = None,
    verbose: bool = False,
    preserve_root_link: bool = False,
) -> bool:
    """Synchronize source into destination.

    A source that resolves to a directory has each of its entries copied into
    destination, even when source itself is a symlink. Any other source is
    copied to destination itself, as is a symlinked source when
    preserve_root_link is set and links are not being dereferenced.

    Entries that fail are logged and skipped. Returns False only when the
    source is missing or the destination cannot be prepared.
    """
    if not os.path.lexists(source):
        warn(f"Source not found: {source}")
        return False

    single = not source.is_dir() or (preserve_root_link and source.is_symlink() and not dereference)
    root = destination.parent if single else destination
    created = missing_parents(root)
    try:
        root.mkdir(parents=True, exist_ok=True)
        entries = [] if single else sorted(source.iterdir())
    except OSError as exc:
        warn(f"Cannot copy {source} to {destination}: {exc}")
        return False

    if single:
        try:
            copy_entry(source, destination, dereference, verbose)
        except OSError as exc:
            warn(f"Failed to copy {source}: {exc}")
            return False
    else:
        for entry in entries:
            try:
                copy_entry(entry, destination / entry.name, dereference, verbose)
            except OSError as exc:
                warn(f"Failed to copy {entry}: {exc}")

    if owner is not None:
        failures = apply_ownership(destination, owner, verbose, follow_root=not single)
        for directory in created:
            if directory == destination:
                continue
            try:
                os.lchown(directory, owner.uid, owner.gid)
            except OSError:
                failures += 1
        if failures:
            warn(f"Could not set ownership on {failures} entries under {destination}")
    return True


def run_command(cmd: Sequence[str], verbose: bool = False) -> List[str]:
    debug(f"Running command: {' '.join(cmd)}", verbose)
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, check=False
        )
    except FileNotFoundError:
        debug(f"Command not found: {cmd[0]}", verbose)
        return []
    if result.returncode != 0 and verbose:
        warn(f"Command {' '.join(cmd)} returned {result.returncode}: {result.stderr.strip()}")
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def run_quiet(cmd: Sequence[str], verbose: bool = False) -> None:
    """Run a best-effort command with its output discarded."""
    if not shutil.which(cmd[0]):
        debug(f"Command not found: {cmd[0]}", verbose)
        return
    debug(f"Running command: {' '.join(cmd)}", verbose)
    try:
        result = subprocess.run(
            cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False
        )
    except OSError as exc:
        warn(f"Command {cmd[0]} failed: {exc}")
        return
    if result.returncode != 0:
        debug(f"Command {' '.join(cmd)} returned {result.returncode}", verbose)


class AttributeStore:
    """Per-file metadata kept by the desktop shell, plus its refresh hooks."""

    def read_attribute(self, path: Path, key: str) -> str:
        raise NotImplementedError

    def write_attribute(self, path: Path, key: str, value: str) -> None:
        raise NotImplementedError

    def write_attributes(self, key: str, items: Sequence[Tuple[Path, str]]) -> None:
        for path, value in items:
            self.write_attribute(path, key, value)

    def refresh_shell(self) -> None:
        pass

    def update_desktop_database(self, directory: Path) -> None:
        pass


class GioAttributeStore(AttributeStore):
    """Attribute access through gio, or the older gvfs-* tools."""

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose

    def _tool(self) -> Optional[str]:
        if shutil.which("gio"):
            return "gio"
        if shutil.which("gvfs-info"):
            return "gvfs"
        return None

    def _info_command(self, tool: str, path: Path, key: str) -> List[str]:
        if tool == "gio":
            return ["gio", "info", "-a", key, str(path)]
        return ["gvfs-info", "-a", key, str(path)]

    def _set_command(self, tool: str, path: Path, key: str, value: str) -> List[str]:
        if tool == "gio":
            return ["gio", "set", "-t", "string", str(path), key, value]
        return ["gvfs-set-attribute", "-t", "string", str(path), key, value]

    def read_attribute(self, path: Path, key: str) -> str:
        tool = self._tool()
        if tool is None:
            debug("No attribute tool (gio/gvfs-info) available", self.verbose)
            return ""
        prefix = f"{key}:"
        for line in run_command(self._info_command(tool, path, key), self.verbose):
            if line.startswith(prefix):
                return line[len(prefix):].strip()
        return ""

    def write_attribute(self, path: Path, key: str, value: str) -> None:
        tool = self._tool()
        if tool is None:
            debug("No attribute tool (gio/gvfs-set-attribute) available", self.verbose)
            return
        run_quiet(self._set_command(tool, path, key, value), self.verbose)

    def write_attributes(self, key: str, items: Sequence[Tuple[Path, str]]) -> None:
        """Apply every pending write from one shell script run."""
        tool = self._tool()
        if tool is None:
            debug("No attribute tool (gio/gvfs-set-attribute) available", self.verbose)
            return
        if not items:
            return
        lines = ["#!/bin/sh"]
        lines.extend(shlex.join(self._set_command(tool, path, key, value)) for path, value in items)

        fd, script = tempfile.mkstemp(prefix="deskfreeze-", suffix=".sh")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape") as handle:
                handle.write("\n".join(lines) + "\n")
            os.chmod(script, 0o700)
            debug(f"Applying {len(items)} attribute writes via {script}", self.verbose)
            result = subprocess.run(
                ["sh", script], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False
            )
            if result.returncode != 0:
                warn(f"Attribute script exited with {result.returncode}")
        finally:
            Path(script).unlink(missing_ok=True)

    def refresh_shell(self) -> None:
        run_quiet(["xrefresh"], self.verbose)

    def update_desktop_database(self, directory: Path) -> None:
        run_quiet(["update-desktop-database", str(directory)], self.verbose)


_MANIFEST_ESCAPES = {"%": "%25", "|": "%7C", "\n": "%0A", "\r": "%0D"}
_MANIFEST_UNESCAPE = re.compile(r"%(25|7C|0A|0D)")


def escape_manifest_name(name: str) -> str:
    return "".join(_MANIFEST_ESCAPES.get(ch, ch) for ch in name)


def unescape_manifest_name(text: str) -> str:
    return _MANIFEST_UNESCAPE.sub(lambda m: chr(int(m.group(1), 16)), text)


def append_manifest_entry(stream: IO[str], name: str, position: str) -> None:
    stream.write(f"{escape_manifest_name(name)}|{position}\n")


def load_manifest(path: Path) -> List[Tuple[str, str]]:
    """Read (name, position) pairs in file order; lines without '|' are skipped."""
    text = path.read_text(encoding="utf-8", errors="surrogateescape")
    entries: List[Tuple[str, str]] = []
    for line in text.split("\n"):
        name, sep, position = line.partition("|")
        if not sep:
            continue
        entries.append((unescape_manifest_name(name), position.strip()))
    return entries


class IconLayout:
    """Desktop icon coordinates for individual files."""

    def __init__(self, store: AttributeStore, verbose: bool = False) -> None:
        self.store = store
        self.verbose = verbose

    def read_position(self, path: Path) -> str:
        try:
            value = self.store.read_attribute(path, ICON_POSITION_KEY)
        except Exception as exc:  # noqa: BLE001
            debug(f"Reading icon position of {path} failed: {exc}", self.verbose)
            return ""
        match = POSITION_PATTERN.search(value or "")
        return match.group(1) if match else ""

    def write_position(self, path: Path, position: str) -> None:
        if not position:
            return
        try:
            self.store.write_attribute(path, ICON_POSITION_KEY, position)
        except Exception as exc:  # noqa: BLE001
            warn(f"Setting icon position of {path} failed: {exc}")

    def apply_positions(self, directory: Path, entries: Sequence[Tuple[str, str]]) -> int:
        """Replay recorded positions in one batch; returns how many were queued."""
        pending: List[Tuple[Path, str]] = []
        for name, position in entries:
            if not position:
                continue
            path = directory / name
            if not os.path.lexists(path):
                debug(f"Skipping position for missing entry {name}", self.verbose)
                continue
            pending.append((path, position))
        if not pending:
            return 0
        try:
            self.store.write_attributes(ICON_POSITION_KEY, pending)
        except Exception as exc:  # noqa: BLE001
            warn(f"Replaying icon positions failed: {exc}")
            return 0
        return len(pending)


@contextmanager
def target_lock(lock_path: Path, owner: Identity, verbose: bool = False) -> Iterator[None]:
    """Hold an exclusive lock for one target; fail at once if it is taken.

    The lock file and its directory are created on first use and left in place.
    """
    created = not lock_path.exists()
    chown_to = owner if os.geteuid() == 0 else None
    ensure_directory(lock_path.parent, chown_to, verbose)
    with open(lock_path, "a", encoding="utf-8") as handle:
        if created and chown_to is not None:
            try:
                os.chown(lock_path, owner.uid, owner.gid)
            except OSError as exc:
                debug(f"chown failed for {lock_path}: {exc}", verbose)
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise SnapshotBusyError(
                f"Another snapshot operation is running (lockfile: {lock_path})"
            ) from None
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)


class SnapshotManager:
    """Freeze, restore and disarm snapshots for the supported targets."""

    def __init__(
        self,
        store: Optional[AttributeStore] = None,
        verbose: bool = False,
        restore_settle_delay: float = RESTORE_SETTLE_DELAY,
    ) -> None:
        self.verbose = verbose
        self.store = store if store is not None else GioAttributeStore(verbose=verbose)
        self.icons = IconLayout(self.store, verbose=verbose)
        self.restore_settle_delay = restore_settle_delay

    # ------------------------------------------------------------------
    def _policy(self, target: str) -> TargetPolicy:
        policy = TARGET_POLICIES.get(target)
        if policy is None:
            raise UnknownTargetError(
                f"Unsupported target '{target}' (supported: {', '.join(TARGET_POLICIES)})"
            )
        return policy

    def _context(self, target: str) -> Tuple[TargetPolicy, SnapshotLayout, Identity]:
        policy = self._policy(target)
        layout = SnapshotLayout(get_home())
        return policy, layout, resolve_acting_identity(layout.home)

    def _owner_for(self, location: SourceLocation, identity: Identity) -> Optional[Identity]:
        if location.owner == OWNER_ROOT:
            return ROOT_IDENTITY
        if location.owner == OWNER_USER:
            return identity
        return None

    # ------------------------------------------------------------------
    def freeze(self, target: str) -> bool:
        """Replace the target's snapshot with the live state and arm it."""
        try:
            policy, layout, identity = self._context(target)
            with target_lock(layout.lock_file(target), identity, self.verbose):
                self._capture(policy, layout)
                try:
                    layout.trigger_file(target).touch()
                except OSError as exc:
                    raise DeskfreezeError(
                        f"Snapshot for '{target}' was taken but could not be armed: {exc}"
                    ) from exc
        except Exception as exc:  # noqa: BLE001
            warn(f"Freeze of '{target}' failed: {exc}")
            return False
        info(f"Froze '{target}'; restore armed for next boot.")
        return True

    def _capture(self, policy: TargetPolicy, layout: SnapshotLayout) -> None:
        layout.root.mkdir(parents=True, exist_ok=True)
        snapshot = layout.target_dir(policy.name)
        if os.path.lexists(snapshot):
            info("Removing previous snapshot...")
            remove_path(snapshot)
        snapshot.mkdir()

        if policy.uses_manifest:
            self._capture_desktop(policy, layout, snapshot)
        else:
            self._capture_folders(policy, layout, snapshot)

    def _capture_desktop(self, policy: TargetPolicy, layout: SnapshotLayout, snapshot: Path) -> None:
        location = policy.sources[0]
        desktop = layout.resolve(location.path)
        if not desktop.is_dir():
            raise SnapshotMissingError(f"Desktop folder not found: {desktop}")
        destination = snapshot / DESKTOP_FILES_DIR
        destination.mkdir()

        info("Backing up desktop...")
        manifest_path = layout.manifest_file(policy.name)
        with manifest_path.open("w", encoding="utf-8", errors="surrogateescape") as manifest:
            for entry in sorted(desktop.iterdir()):
                try:
                    copy_entry(entry, destination / entry.name, location.dereference, self.verbose)
                except OSError as exc:
                    warn(f"Failed to copy {entry}: {exc}")
                    continue
                append_manifest_entry(manifest, entry.name, self.icons.read_position(entry))

        if policy.captures_trash:
            self._capture_trash(layout, snapshot)
        for aux in policy.auxiliary:
            self._capture_auxiliary(policy, aux, layout)

    def _capture_trash(self, layout: SnapshotLayout, snapshot: Path) -> None:
        info("Backing up trash...")
        if not layout.trash.is_dir():
            info("No trash directory found, skipping.")
            return
        if not copy_tree(layout.trash, snapshot / TRASH_BACKUP_DIR, verbose=self.verbose):
            warn("Trash backup failed; continuing without it.")

    def _capture_auxiliary(self, policy: TargetPolicy, location: SourceLocation, layout: SnapshotLayout) -> None:
        source = layout.resolve(location.path)
        if not os.path.lexists(source):
            debug(f"Skipping missing {source}", self.verbose)
            return
        mirror = layout.mirror(policy.name, location.path)
        if not copy_tree(
            source, mirror, dereference=location.dereference, verbose=self.verbose, preserve_root_link=True
        ):
            warn(f"Backup of {source} failed; continuing.")

    def _capture_folders(self, policy: TargetPolicy, layout: SnapshotLayout, snapshot: Path) -> None:
        info("Backing up user folders...")
        for location in policy.sources:
            source = layout.resolve(location.path)
            if not source.is_dir():
                debug(f"Skipping missing {source}", self.verbose)
                continue
            info(f"  {source.name}")
            if not copy_tree(source, snapshot / source.name, dereference=location.dereference, verbose=self.verbose):
                raise DeskfreezeError(f"Failed to back up {source}")

    # ------------------------------------------------------------------
    def restore(self, target: str) -> bool:
        """Roll the live state of target back to its snapshot.

        Steps already completed are not rolled back when a later one fails;
        running restore again is the recovery path.
        """
        try:
            policy, layout, identity = self._context(target)
            self._validate_snapshot(policy, layout)
            with target_lock(layout.lock_file(target), identity, self.verbose):
                self._validate_snapshot(policy, layout)
                if policy.uses_manifest:
                    ok = self._restore_desktop(policy, layout, identity)
                else:
                    ok = self._restore_folders(policy, layout, identity)
        except Exception as exc:  # noqa: BLE001
            warn(f"Restore of '{target}' failed: {exc}")
            return False
        if ok:
            info(f"Restored '{target}' from snapshot.")
        else:
            warn(f"Restore of '{target}' finished with errors.")
        return ok

    def _validate_snapshot(self, policy: TargetPolicy, layout: SnapshotLayout) -> None:
        snapshot = layout.target_dir(policy.name)
        if not snapshot.is_dir():
            raise SnapshotMissingError(f"No snapshot found for '{policy.name}'")
        if policy.uses_manifest:
            if not layout.manifest_file(policy.name).is_file():
                raise SnapshotMissingError(f"Snapshot manifest missing for '{policy.name}'")
            if not (snapshot / DESKTOP_FILES_DIR).is_dir():
                raise SnapshotMissingError(f"Desktop backup missing for '{policy.name}'")

    def _restore_desktop(self, policy: TargetPolicy, layout: SnapshotLayout, identity: Identity) -> bool:
        snapshot = layout.target_dir(policy.name)
        for aux in policy.auxiliary:
            self._restore_auxiliary(policy, aux, layout, identity)

        location = policy.sources[0]
        desktop = layout.resolve(location.path)
        owner = self._owner_for(location, identity)
        info("Restoring desktop...")
        ensure_directory(desktop, owner, self.verbose)
        clear_directory(desktop, self.verbose)
        ok = copy_tree(snapshot / DESKTOP_FILES_DIR, desktop, dereference=False, owner=owner, verbose=self.verbose)

        if ok:
            if self.restore_settle_delay > 0:
                time.sleep(self.restore_settle_delay)
            try:
                entries = load_manifest(layout.manifest_file(policy.name))
            except OSError as exc:
                warn(f"Could not read snapshot manifest: {exc}")
                entries = []
            applied = self.icons.apply_positions(desktop, entries)
            debug(f"Replayed {applied} icon positions", self.verbose)
            try:
                self.store.refresh_shell()
            except Exception as exc:  # noqa: BLE001
                warn(f"Desktop refresh failed: {exc}")

        if policy.captures_trash:
            self._restore_trash(layout, snapshot, identity)
        return ok

    def _restore_auxiliary(
        self,
        policy: TargetPolicy,
        location: SourceLocation,
        layout: SnapshotLayout,
        identity: Identity,
    ) -> None:
        backup = layout.mirror(policy.name, location.path)
        if not os.path.lexists(backup):
            debug(f"No backup of {location.path} in snapshot", self.verbose)
            return
        live = layout.resolve(location.path)
        owner = self._owner_for(location, identity)
        try:
            if location.privileged and backup.is_dir() and not backup.is_symlink():
                live.mkdir(parents=True, exist_ok=True)
                clear_directory(live, self.verbose)
            else:
                remove_path(live)
        except OSError as exc:
            warn(f"Could not prepare {live} for restore: {exc}")
            return
        if not copy_tree(
            backup, live, dereference=False, owner=owner, verbose=self.verbose, preserve_root_link=True
        ):
            warn(f"Restore of {live} failed; continuing.")
            return
        if live.name == "applications":
            try:
                self.store.update_desktop_database(live)
            except Exception as exc:  # noqa: BLE001
                warn(f"Updating desktop database for {live} failed: {exc}")

    def _restore_trash(self, layout: SnapshotLayout, snapshot: Path, identity: Identity) -> None:
        backup = snapshot / TRASH_BACKUP_DIR
        if not backup.is_dir():
            info("No trash backup in snapshot, skipping.")
            return
        info("Restoring trash...")
        for sub in TRASH_SUBDIRS:
            live = layout.trash / sub
            try:
                ensure_directory(live, identity, self.verbose)
                clear_directory(live, self.verbose)
            except OSError as exc:
                warn(f"Could not clear {live}: {exc}")
                continue
            source = backup / sub
            if source.is_dir() and not copy_tree(source, live, dereference=False, owner=identity, verbose=self.verbose):
                warn(f"Restore of {live} failed; continuing.")

    def _restore_folders(self, policy: TargetPolicy, layout: SnapshotLayout, identity: Identity) -> bool:
        snapshot = layout.target_dir(policy.name)
        ok = True
        info("Restoring user folders...")
        for location in policy.sources:
            live = layout.resolve(location.path)
            backup = snapshot / live.name
            if not os.path.lexists(backup):
                debug(f"No backup of {live.name} in snapshot", self.verbose)
                continue
            info(f"  {live.name}")
            try:
                # A folder redirected by a symlink keeps its link; only the contents are replaced.
                if live.is_symlink() and live.is_dir():
                    clear_directory(live, self.verbose)
                else:
                    remove_path(live)
            except OSError as exc:
                warn(f"Could not clear {live}: {exc}")
                ok = False
                continue
            owner = self._owner_for(location, identity)
            if not copy_tree(backup, live, dereference=False, owner=owner, verbose=self.verbose):
                ok = False
        return ok

    # ------------------------------------------------------------------
    def unarm(self, target: str) -> None:
        """Delete the target's snapshot, and the snapshot root once empty."""
        try:
            _, layout, identity = self._context(target)
            snapshot = layout.target_dir(target)
            if not os.path.lexists(snapshot):
                info(f"No snapshot found for '{target}', nothing to remove.")
                return
            with target_lock(layout.lock_file(target), identity, self.verbose):
                if not os.path.lexists(snapshot):
                    info(f"No snapshot found for '{target}', nothing to remove.")
                    return
                info(f"Removing snapshot for '{target}'...")
                remove_path(snapshot)
                if layout.root.is_dir() and not any(layout.root.iterdir()):
                    info("All snapshots removed, cleaning up the snapshot directory.")
                    layout.root.rmdir()
        except Exception as exc:  # noqa: BLE001
            warn(f"Unfreeze of '{target}' failed: {exc}")

    def is_armed(self, target: str) -> bool:
        try:
            self._policy(target)
            return SnapshotLayout(get_home()).trigger_file(target).exists()
        except (DeskfreezeError, OSError) as exc:
            warn(str(exc))
            return False

    def status(self) -> Dict[str, bool]:
        return {target: self.is_armed(target) for target in SUPPORTED_TARGETS}

    def execute_restore_on_boot(self) -> None:
        for target in SUPPORTED_TARGETS:
            if not self.is_armed(target):
                debug(f"'{target}' is not armed", self.verbose)
                continue
            info(f"Restore flag found for '{target}', restoring...")
            if self.restore(target):
                info(f"'{target}' restored from snapshot.")
            else:
                warn(f"Restoring '{target}' failed.")


def freeze(target: str) -> int:
    return 0 if SnapshotManager().freeze(target) else -1


def unarm(target: str) -> None:
    SnapshotManager().unarm(target)


def is_armed(target: str) -> int:
    return 1 if SnapshotManager().is_armed(target) else 0


def restore(target: str) -> int:
    return 0 if SnapshotManager().restore(target) else -1


def execute_restore_on_boot() -> None:
    SnapshotManager().execute_restore_on_boot()


def add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Deskfreeze (Desktop snapshot & restore-on-boot)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("freeze", "Snapshot a target and arm restore on next boot"),
        ("unfreeze", "Remove a target's snapshot and cancel restore"),
        ("restore", "Restore a target from its snapshot now"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("target", choices=SUPPORTED_TARGETS)
        add_common_flags(cmd)

    status_p = sub.add_parser("status", help="Show which targets are armed")
    status_p.add_argument("--json", action="store_true", help="Print status as JSON")
    add_common_flags(status_p)

    boot_p = sub.add_parser("boot", help="Restore every armed target (startup hook)")
    add_common_flags(boot_p)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    manager = SnapshotManager(verbose=args.verbose)

    if args.command == "freeze":
        return 0 if manager.freeze(args.target) else 1
    if args.command == "unfreeze":
        manager.unarm(args.target)
        return 0
    if args.command == "restore":
        return 0 if manager.restore(args.target) else 1
    if args.command == "status":
        states = manager.status()
        if args.json:
            print(json.dumps(states, indent=2))
        else:
            info("Restore-on-boot status:")
            for target, armed in states.items():
                print(f"  - {target}: {'armed' if armed else 'disarmed'}")
        return 0
    if args.command == "boot":
        manager.execute_restore_on_boot()
        return 0
    parser.error("Unknown command")
    return 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as e:
        import traceback
        log_dir = Path("~/.deskfreeze").expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "deskfreeze.error.log"

        timestamp = time.strftime("%Y-%m-%d %H:%M:%S")
        with open(log_file, "a") as f:
            f.write(f"\n--- Error at {timestamp} ---\n")
            traceback.print_exc(file=f)

        print(f"\n[!] An unexpected error occurred: {e}")
        print(f"[!] Details saved to: {log_file}")
        sys.exit(1)
