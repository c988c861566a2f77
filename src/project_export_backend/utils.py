"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided strings for object keys and download names
- Ensuring directory creation with proper error handling
- Rendering byte sizes for humans
"""

from __future__ import annotations

import re
from pathlib import Path

# Pattern to match characters that are not safe for object keys and paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

# Characters kept in human-facing document names (spaces are allowed there)
DOCUMENT_NAME_PATTERN = re.compile(r"[^a-zA-Z0-9\s_-]+")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Export.md", "export")
        "my-export.md"
        >>> sanitize_label("@#$", "export")
        "export"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def document_name(name: str, fallback: str, max_length: int = 50) -> str:
    """
    Clean a project name for use in a download file name.

    Unlike sanitize_label the case and single spaces are preserved, so
    "Mon Projet!" becomes "Mon Projet".
    """
    cleaned = DOCUMENT_NAME_PATTERN.sub("", name)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()[:max_length].strip()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def format_file_size(size: int) -> str:
    for unit, scale in (("GB", 1024**3), ("MB", 1024**2), ("KB", 1024)):
        if size >= scale:
            return f"{size / scale:.1f} {unit}"
    return f"{size} bytes"
