"""SHA-256 utilities for package integrity and install snapshots."""

import hashlib
import logging
import os
from pathlib import Path

SHA256_HEX_LENGTH = 64
EMPTY_TREE_DIGEST = hashlib.sha256().hexdigest()


def compute_sha256(file_path: Path, chunk_size: int = 64 * 1024) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to file to hash
        chunk_size: Read buffer size

    Returns:
        64-character lower-case hex digest

    Raises:
        FileNotFoundError: If file doesn't exist
        OSError: If file read fails
    """
    logger = logging.getLogger("deployer.verification")
    sha = hashlib.sha256()

    try:
        with open(file_path, "rb") as f:
            while chunk := f.read(chunk_size):
                sha.update(chunk)
    except FileNotFoundError:
        logger.error(f"File not found: {file_path}")
        raise

    result = sha.hexdigest()
    logger.debug(f"Computed SHA-256 for {Path(file_path).name}: {result}")
    return result


def verify_sha256(file_path: Path, expected_sha256: str) -> bool:
    """Check a file against an expected SHA-256 digest.

    Raises:
        ValueError: If expected_sha256 is not a 64-char hex string
    """
    logger = logging.getLogger("deployer.verification")

    if not isinstance(expected_sha256, str) or len(expected_sha256) != SHA256_HEX_LENGTH:
        raise ValueError(
            f"Invalid SHA-256 format: {expected_sha256} (must be 64-char hex)"
        )

    actual = compute_sha256(file_path)
    match = actual == expected_sha256.lower()
    if match:
        logger.info(f"SHA-256 verification passed for {Path(file_path).name}")
    else:
        logger.error(
            f"SHA-256 mismatch for {Path(file_path).name}: "
            f"expected {expected_sha256.lower()}, got {actual}"
        )
    return match


def tree_digest(root: Path) -> str:
    """Digest of a directory tree: relative paths, file contents and symlinks.

    Two trees with the same digest are bit-identical for install purposes.
    A missing root hashes to EMPTY_TREE_DIGEST; an existing empty
    directory does not.

    Args:
        root: Directory to digest

    Returns:
        64-character hex digest
    """
    root = Path(root)
    sha = hashlib.sha256()
    if not root.exists():
        return sha.hexdigest()

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        sha.update(f"D:{rel_dir}\n".encode("utf-8"))
        for name in sorted(filenames):
            path = Path(dirpath) / name
            rel = path.relative_to(root).as_posix()
            if path.is_symlink():
                sha.update(f"L:{rel}->{os.readlink(path)}\n".encode("utf-8"))
                continue
            sha.update(f"F:{rel}:{compute_sha256(path)}\n".encode("utf-8"))

    return sha.hexdigest()
