"""
Checksum Calculation Utilities

SHA-256 checksums for backup artifacts. Files are hashed in streaming
fashion so multi-gigabyte dumps never need to fit in memory; physical
backups (directories) get one combined checksum over their files.
"""

import hashlib
import logging
from pathlib import Path
from typing import Union, Optional

logger = logging.getLogger(__name__)


class ChecksumCalculator:
    """
    Calculate and verify SHA-256 checksums for backup integrity.

    Example:
        ```python
        calculator = ChecksumCalculator()

        checksum = calculator.calculate("./backups/full_backup_20260108_120000.sql")
        if not calculator.verify("./backups/full_backup_20260108_120000.sql", checksum):
            print("Artifact changed since it was written")
        ```
    """

    # Buffer size for streaming file reads (1 MB)
    BUFFER_SIZE = 1024 * 1024

    def __init__(self, buffer_size: Optional[int] = None):
        self.buffer_size = buffer_size or self.BUFFER_SIZE

    def calculate_file_checksum(self, file_path: Union[str, Path]) -> str:
        """
        Calculate the checksum of a file by streaming it.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            raise FileNotFoundError(f"File not found: {file_path}")

        hash_func = hashlib.sha256()
        with open(file_path, 'rb') as f:
            while True:
                data = f.read(self.buffer_size)
                if not data:
                    break
                hash_func.update(data)

        checksum = hash_func.hexdigest()
        logger.debug(f"Calculated checksum for {file_path.name}: {checksum[:16]}...")
        return checksum

    def calculate_directory_checksum(self, directory_path: Union[str, Path]) -> str:
        """
        Calculate a combined checksum for all files in a directory.

        Relative paths are hashed along with file checksums, so renaming or
        moving a file changes the result.

        Raises:
            NotADirectoryError: If path is not a directory
        """
        directory_path = Path(directory_path)
        if not directory_path.is_dir():
            raise NotADirectoryError(f"Not a directory: {directory_path}")

        files = sorted(
            (f for f in directory_path.rglob('*') if f.is_file()),
            key=lambda x: x.relative_to(directory_path).as_posix()
        )

        hash_func = hashlib.sha256()
        for file_path in files:
            hash_func.update(file_path.relative_to(directory_path).as_posix().encode('utf-8'))
            hash_func.update(self.calculate_file_checksum(file_path).encode('utf-8'))

        combined_checksum = hash_func.hexdigest()
        logger.debug(f"Calculated directory checksum for {len(files)} files: {combined_checksum[:16]}...")
        return combined_checksum

    def calculate(self, path: Union[str, Path]) -> str:
        """Checksum of a file or a directory, whichever path points to."""
        path = Path(path)
        if path.is_dir():
            return self.calculate_directory_checksum(path)
        return self.calculate_file_checksum(path)

    def verify(self, path: Union[str, Path], expected_checksum: str) -> bool:
        """
        Verify an artifact against an expected checksum.

        Returns:
            True if checksums match, False otherwise
        """
        actual_checksum = self.calculate(path)
        matches = actual_checksum.lower() == expected_checksum.lower()

        if matches:
            logger.debug(f"Checksum verification passed for {Path(path).name}")
        else:
            logger.warning(
                f"Checksum mismatch for {Path(path).name}: "
                f"expected {expected_checksum[:16]}..., got {actual_checksum[:16]}..."
            )
        return matches


def artifact_size(path: Union[str, Path]) -> int:
    """Size of a file, or the total size of the files under a directory."""
    path = Path(path)
    if path.is_dir():
        return sum(f.stat().st_size for f in path.rglob('*') if f.is_file())
    if path.is_file():
        return path.stat().st_size
    return 0
