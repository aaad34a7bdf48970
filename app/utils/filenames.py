import re
import unicodedata

MAX_MULTIPART_FILENAME_LENGTH = 150


def sanitize_filename(filename: str) -> str:
    """Sanitize filename for safe storage on local disk"""
    sanitized = filename or ""
    sanitized = re.sub(r'[–—]', '-', sanitized)
    sanitized = re.sub(r'\s+', '_', sanitized)
    sanitized = re.sub(r'[^\w\-_\.]', '', sanitized, flags=re.ASCII)
    sanitized = sanitized.strip('.-_')

    if len(sanitized) < 3:
        sanitized = f"file_{sanitized}"

    return sanitized


def sanitize_multipart_filename(value: str) -> str:
    """
    Make a filename safe to embed in a multipart Content-Disposition header.

    Anything that could break the boundary framing (CR/LF, quotes, backslashes,
    control and non-ASCII characters) becomes an underscore. Long names keep
    their tail so the extension survives.
    """
    name = unicodedata.normalize("NFKD", str(value or "file"))
    name = re.sub(r'[\r\n"\\]', '_', name)
    name = re.sub(r'[^\x20-\x7e]', '_', name)
    name = re.sub(r'\s+', '_', name)
    name = re.sub(r'_+', '_', name).strip()

    if not name:
        return "file"
    if len(name) > MAX_MULTIPART_FILENAME_LENGTH:
        name = name[-MAX_MULTIPART_FILENAME_LENGTH:]
    return name
