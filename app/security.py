"""
Security utilities for ChillChat.
Provides path traversal protection, input sanitization, upload validation
and API token hashing.
"""
import hashlib
import html
import re
import logging
import secrets
from pathlib import Path
from typing import Set

from errors import ValidationError

security_logger = logging.getLogger('security')

# File shares accept ZIP archives only
ALLOWED_SHARE_EXTENSIONS: Set[str] = {'.zip'}
ALLOWED_SHARE_CONTENT_TYPES: Set[str] = {
    'application/zip',
    'application/x-zip-compressed',
}
ZIP_MAGIC = (b'PK\x03\x04', b'PK\x05\x06')

# Dangerous patterns in filenames
DANGEROUS_PATTERNS = [
    r'\.\.', r'/', r'\\', r'\x00',  # Path traversal
    r'<', r'>', r':', r'"', r'\|', r'\?', r'\*'  # Windows special chars
]


def validate_path_traversal(base_path: Path, requested_path: str) -> Path:
    """
    Validate that a file path doesn't escape the base directory.

    Args:
        base_path: The allowed base directory
        requested_path: The user-provided path/filename

    Returns:
        Safe resolved path

    Raises:
        ValueError: If path traversal detected
    """
    clean_path = requested_path.replace('..', '').replace('/', '').replace('\\', '')
    full_path = (base_path / clean_path).resolve()

    try:
        full_path.relative_to(base_path.resolve())
    except ValueError:
        security_logger.warning(f"Path traversal attempt: {requested_path}")
        raise ValueError("Invalid file path")

    return full_path


def sanitize_input(text: str, max_length: int = 1000) -> str:
    """
    Sanitize user input to prevent XSS and injection attacks.

    Args:
        text: Raw user input
        max_length: Maximum allowed length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    text = text[:max_length]
    text = html.escape(text)
    text = text.replace('\x00', '')

    return text


def sanitize_filename(filename: str) -> str:
    """
    Sanitize a filename to prevent path traversal and injection.

    Args:
        filename: Original filename

    Returns:
        Safe filename
    """
    if not filename:
        return "unnamed_file"

    for pattern in DANGEROUS_PATTERNS:
        filename = re.sub(pattern, '', filename)

    filename = filename.strip('. \t\n\r')

    if len(filename) > 255:
        name, ext = filename[:200], filename[-50:] if '.' in filename else ''
        filename = name + ext

    return filename or "unnamed_file"


def validate_share_upload(filename: str, content_type: str, data: bytes, max_size: int):
    """
    Check that an upload is a ZIP archive within the size limit.

    Raises:
        ValidationError: If the name, declared type, signature or size is wrong
    """
    if Path(filename).suffix.lower() not in ALLOWED_SHARE_EXTENSIONS:
        log_security_event("blocked_file_type", {"filename": filename})
        raise ValidationError("Only ZIP files are allowed")
    if content_type not in ALLOWED_SHARE_CONTENT_TYPES:
        log_security_event("blocked_content_type", {"content_type": content_type})
        raise ValidationError("Only ZIP files are allowed")
    if not data:
        raise ValidationError("Empty file")
    if len(data) > max_size:
        raise ValidationError(f"File too large (max {max_size // (1024 * 1024)}MB)")
    if not data.startswith(ZIP_MAGIC):
        log_security_event("zip_signature_mismatch", {"filename": filename})
        raise ValidationError("File is not a valid ZIP archive")


def new_api_token() -> str:
    return secrets.token_urlsafe(32)


def new_fetch_ticket() -> str:
    return secrets.token_urlsafe(24)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def log_security_event(event_type: str, details: dict):
    """Log a security-relevant event."""
    security_logger.warning(f"SECURITY_EVENT: {event_type} - {details}")
