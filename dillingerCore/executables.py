"""
Heuristic discovery of game executables inside an install directory.

The walk is depth limited and capped, skips redistributable and cache
folders, and ranks candidates so the most likely game binary comes first.
"""

import logging
import ntpath
import os
import posixpath
import stat
import struct
from pathlib import Path
from typing import List, Optional, Tuple

from .models import Shortcut

logger = logging.getLogger(__name__)

MAX_DEPTH = 12
MAX_RESULTS = 500

WINDOWS_EXTENSIONS = {".exe", ".bat", ".cmd"}
LINUX_EXTENSIONS = {".sh", ".x86_64", ".x86", ".appimage", ".bin", ""}

EXCLUDED_DIRECTORIES = {"_redist", "redist", "__pycache__", "tmp", "temp", "cache", "logs"}
EXCLUDED_NAME_PARTS = ("unins", "uninstall", "setup", "installer", "config", "settings")

PATH_BONUSES = (("drive_c/", 10), ("/gog games/", 8), ("/program files/", 6), ("/bin/", 2))
NAME_BONUSES = (("game", 10), ("main", 8), ("start", 7), ("launcher", 7), ("run", 5))
PENALTIES = (("unins", -50), ("setup", -25), ("install", -25), ("/support/", -10), ("/tools/", -8))


def _is_candidate(path: Path) -> bool:
    name = path.name.lower()
    if any(part in name for part in EXCLUDED_NAME_PARTS):
        return False

    suffix = path.suffix.lower()
    if suffix in WINDOWS_EXTENSIONS:
        return True
    if suffix not in LINUX_EXTENSIONS:
        return False
    try:
        mode = path.stat().st_mode
    except OSError:
        return False
    return stat.S_ISREG(mode) and bool(mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))


def score_executable(relative_path: str) -> int:
    """Higher scores are more likely to be the game's main binary"""
    lowered = "/" + relative_path.lower()
    base = posixpath.basename(lowered)
    score = 0

    for fragment, bonus in PATH_BONUSES:
        if fragment in lowered:
            score += bonus
    for fragment, bonus in NAME_BONUSES:
        if fragment in base:
            score += bonus
    for fragment, penalty in PENALTIES:
        haystack = lowered if fragment.startswith("/") else base
        if fragment in haystack:
            score += penalty

    # Prefer shallow paths
    score -= relative_path.count("/") * 2
    return score


def find_executables(root: Path, max_depth: int = MAX_DEPTH, limit: int = MAX_RESULTS) -> List[str]:
    """Return candidate executables under root as ranked relative POSIX paths.

    Raises OSError if root itself cannot be read.
    """
    root = Path(root)
    if not root.is_dir():
        raise NotADirectoryError(str(root))
    os.listdir(root)

    found: List[Tuple[int, str]] = []
    root_depth = len(root.parts)

    for dirpath, dirnames, filenames in os.walk(root, onerror=None):
        depth = len(Path(dirpath).parts) - root_depth
        dirnames[:] = sorted(d for d in dirnames if d.lower() not in EXCLUDED_DIRECTORIES)
        if depth >= max_depth:
            dirnames[:] = []

        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if not _is_candidate(path):
                continue
            relative = path.relative_to(root).as_posix()
            found.append((score_executable(relative), relative))
            if len(found) >= limit:
                break
        if len(found) >= limit:
            break

    found.sort(key=lambda item: (-item[0], item[1]))
    return [relative for _, relative in found]


# ---------------------------------------------------------------------------
# Windows shortcuts
# ---------------------------------------------------------------------------

SHORTCUT_MAX_DEPTH = 10
SHORTCUT_OPEN_DEPTH = 5
SHORTCUT_DIRECTORY_HINTS = ("start menu", "desktop", "menu", "shortcuts")
SHORTCUT_BONUS = 40

LNK_HEADER_SIZE = 0x4C
HAS_TARGET_ID_LIST = 0x01
HAS_LINK_INFO = 0x02
HAS_NAME = 0x04
HAS_RELATIVE_PATH = 0x08
HAS_WORKING_DIR = 0x10
HAS_ARGUMENTS = 0x20
IS_UNICODE = 0x80


def _is_shortcut_folder(relative_dir: str) -> bool:
    lowered = relative_dir.lower()
    return any(hint in lowered for hint in SHORTCUT_DIRECTORY_HINTS)


def find_shortcuts(root: Path, max_depth: int = SHORTCUT_MAX_DEPTH) -> List[str]:
    """Return .lnk files under root as relative POSIX paths.

    Every directory is searched down to SHORTCUT_OPEN_DEPTH; below that only
    Start Menu or Desktop style trees are followed.
    """
    root = Path(root)
    found: List[str] = []

    for dirpath, dirnames, filenames in os.walk(root):
        relative_dir = Path(dirpath).relative_to(root)
        depth = len(relative_dir.parts)
        if depth >= max_depth:
            dirnames[:] = []
        elif depth >= SHORTCUT_OPEN_DEPTH and not _is_shortcut_folder(relative_dir.as_posix()):
            dirnames[:] = [d for d in dirnames if _is_shortcut_folder(d)]
        dirnames.sort()

        for filename in sorted(filenames):
            if filename.lower().endswith(".lnk"):
                found.append((relative_dir / filename).as_posix())
    return found


def _read_string(data: bytes, offset: int, unicode: bool) -> Tuple[str, int]:
    (count,) = struct.unpack_from("<H", data, offset)
    offset += 2
    if unicode:
        raw = data[offset:offset + count * 2]
        if len(raw) != count * 2:
            raise struct.error("string data truncated")
        return raw.decode("utf-16-le"), offset + count * 2
    raw = data[offset:offset + count]
    if len(raw) != count:
        raise struct.error("string data truncated")
    return raw.decode("latin-1"), offset + count


def _read_cstring(data: bytes, offset: int) -> str:
    end = data.find(b"\x00", offset)
    if end == -1:
        end = len(data)
    return data[offset:end].decode("latin-1")


def parse_shortcut_bytes(data: bytes, path: str = "") -> Optional[Shortcut]:
    """Decode the target, arguments and working directory of a shell link.

    Returns None for data that is not a shell link.
    """
    if len(data) < LNK_HEADER_SIZE or struct.unpack_from("<I", data, 0)[0] != LNK_HEADER_SIZE:
        return None

    (flags,) = struct.unpack_from("<I", data, 0x14)
    unicode = bool(flags & IS_UNICODE)
    offset = LNK_HEADER_SIZE
    target = ""

    if flags & HAS_TARGET_ID_LIST:
        (id_list_size,) = struct.unpack_from("<H", data, offset)
        offset += 2 + id_list_size

    if flags & HAS_LINK_INFO:
        link_info_size, header_size = struct.unpack_from("<II", data, offset)
        if header_size >= 0x1C:
            base_offset, _, suffix_offset = struct.unpack_from("<III", data, offset + 0x10)
            if base_offset:
                target = _read_cstring(data, offset + base_offset)
            if suffix_offset:
                suffix = _read_cstring(data, offset + suffix_offset)
                if suffix:
                    target = target.rstrip("\\") + "\\" + suffix
        offset += link_info_size

    strings = {}
    for flag in (HAS_NAME, HAS_RELATIVE_PATH, HAS_WORKING_DIR, HAS_ARGUMENTS):
        if flags & flag:
            strings[flag], offset = _read_string(data, offset, unicode)

    working_directory = strings.get(HAS_WORKING_DIR, "")
    if not target and HAS_RELATIVE_PATH in strings:
        relative = strings[HAS_RELATIVE_PATH]
        target = ntpath.normpath(ntpath.join(working_directory, relative)) if working_directory else relative

    return Shortcut(
        path=path,
        target=target,
        arguments=strings.get(HAS_ARGUMENTS, ""),
        working_directory=working_directory,
        description=strings.get(HAS_NAME, ""),
    )


def parse_shortcut(path) -> Optional[Shortcut]:
    """Read and decode one .lnk file. Malformed links yield None"""
    try:
        data = Path(path).read_bytes()
        return parse_shortcut_bytes(data, str(path))
    except (OSError, struct.error, UnicodeDecodeError) as e:
        logger.warning(f"Could not parse shortcut {path}: {e}")
        return None


def scan_for_shortcuts(path) -> List[Shortcut]:
    """Best-effort: decode every shortcut under path"""
    root = Path(path)
    shortcuts = []
    for relative in find_shortcuts(root):
        shortcut = parse_shortcut(root / relative)
        if shortcut is not None:
            shortcuts.append(shortcut.model_copy(update={"path": relative}))
    logger.info(f"Found {len(shortcuts)} shortcuts in {path}")
    return shortcuts


def _windows_tail(target: str) -> str:
    """C:\\GOG Games\\X\\x.exe -> /gog games/x/x.exe"""
    _, tail = ntpath.splitdrive(target)
    return "/" + tail.replace("\\", "/").lstrip("/").lower()


def prefer_shortcut_targets(executables: List[str], shortcuts: List[Shortcut]) -> List[str]:
    """Move executables that a shortcut points at to the front, keeping order otherwise"""
    tails = [_windows_tail(s.target) for s in shortcuts if s.target]
    if not tails:
        return executables

    def targeted(relative: str) -> bool:
        lowered = "/" + relative.lower()
        return any(lowered.endswith(tail) for tail in tails)

    return sorted(executables, key=lambda relative: -SHORTCUT_BONUS if targeted(relative) else 0)


def scan_for_game_executables(path) -> List[str]:
    """Best-effort scan. Any filesystem error yields an empty list.

    Executables targeted by a Start Menu or Desktop shortcut rank first.
    """
    try:
        executables = find_executables(Path(path))
    except OSError as e:
        logger.warning(f"Executable scan of {path} failed: {e}")
        return []
    executables = prefer_shortcut_targets(executables, scan_for_shortcuts(path))
    logger.info(f"Found {len(executables)} candidate executables in {path}")
    return executables
