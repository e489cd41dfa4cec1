"""
Module for turning user-supplied paths into upload candidates.
"""
import logging
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger(__name__)


class FileScanner:
    """Expands files and folders into (file, relative key) pairs."""

    def __init__(self, include_hidden: bool = False):
        """Initialize the file scanner.

        Args:
            include_hidden: Whether dot-files are uploaded too
        """
        self.include_hidden = include_hidden

    def _is_hidden(self, path: Path, base: Path) -> bool:
        try:
            parts = path.relative_to(base).parts
        except ValueError:
            parts = (path.name,)
        return any(part.startswith('.') for part in parts)

    def scan_folder(self, folder: Path, pattern: str = "*", recursive: bool = True) -> List[Path]:
        """Scan a folder for files matching the pattern.

        Args:
            folder: Path to the folder to scan
            pattern: Glob pattern to match files against
            recursive: Whether to descend into subfolders

        Returns:
            Sorted list of file paths found
        """
        folder = Path(folder)
        if not folder.is_dir():
            logger.error(f"Folder does not exist: {folder}")
            return []

        matches = folder.rglob(pattern) if recursive else folder.glob(pattern)
        files = [
            p for p in matches
            if p.is_file() and (self.include_hidden or not self._is_hidden(p, folder))
        ]
        return sorted(files)

    def expand(self, path: Path, pattern: str = "*") -> List[Tuple[Path, str]]:
        """Expand a path into files with their key relative to the upload root.

        A single file maps to its own name; a folder maps every file inside
        it to `<folder name>/<relative path>`.

        Args:
            path: File or folder supplied by the user
            pattern: Glob pattern applied inside folders

        Returns:
            List of (file path, relative key) tuples
        """
        path = Path(path).expanduser()
        if path.is_file():
            return [(path, path.name)]
        if path.is_dir():
            return [
                (file_path, f"{path.name}/{self.get_relative_path(file_path, path).as_posix()}")
                for file_path in self.scan_folder(path, pattern)
            ]
        logger.error(f"Path does not exist: {path}")
        return []

    def get_relative_path(self, file_path: Path, base_path: Path) -> Path:
        """Get the relative path of a file from a base path.

        Args:
            file_path: Path to the file
            base_path: Base path to make relative to

        Returns:
            Relative path from base_path to file_path
        """
        try:
            return file_path.relative_to(base_path)
        except ValueError:
            logger.error(f"File {file_path} is not relative to {base_path}")
            return Path(file_path.name)
