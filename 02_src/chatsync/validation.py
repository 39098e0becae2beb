"""Client-side attachment validation.

These rules mirror the backend's so that a bad file is rejected with a
descriptive message before any network call is made.
"""

import re
import unicodedata
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .models import FileKind

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
MAX_ATTACHMENTS_PER_MESSAGE = 3
MAX_UPLOADS_PER_HOUR = 10

ALLOWED_EXTENSIONS: dict[FileKind, tuple[str, ...]] = {
    FileKind.PDF: (".pdf",),
    FileKind.IMAGE: (".jpg", ".jpeg", ".png", ".gif"),
}
ALL_ALLOWED_EXTENSIONS = tuple(
    ext for extensions in ALLOWED_EXTENSIONS.values() for ext in extensions
)

MIME_TO_FILE_KIND: dict[str, FileKind] = {
    "application/pdf": FileKind.PDF,
    "image/jpeg": FileKind.IMAGE,
    "image/jpg": FileKind.IMAGE,
    "image/png": FileKind.IMAGE,
    "image/gif": FileKind.IMAGE,
}

_EXTENSION_RE = re.compile(r"\.[^.]*$")


@dataclass
class ValidationResult:
    """Outcome of a validation check."""

    valid: bool
    error: str | None = None
    error_code: str | None = None


@dataclass
class FileValidation(ValidationResult):
    """Outcome of validating one file, with derived metadata."""

    file_kind: FileKind | None = None
    file_size: int | None = None
    file_name: str | None = None


def get_file_extension(file_name: str) -> str:
    """Return the lowercase extension (with dot), or '' if there is none."""
    match = _EXTENSION_RE.search(file_name.lower())
    return match.group(0) if match else ""


def get_file_kind(file_name_or_mime: str) -> FileKind | None:
    """Determine the FileKind from a MIME type or a file name."""
    if file_name_or_mime in MIME_TO_FILE_KIND:
        return MIME_TO_FILE_KIND[file_name_or_mime]

    extension = get_file_extension(file_name_or_mime)
    for kind, extensions in ALLOWED_EXTENSIONS.items():
        if extension in extensions:
            return kind
    return None


def validate_file_extension(file_name: str) -> ValidationResult:
    if not file_name or not file_name.strip():
        return ValidationResult(
            valid=False,
            error="Nome do arquivo é obrigatório",
            error_code="FILENAME_REQUIRED",
        )

    extension = get_file_extension(file_name)
    if not extension:
        return ValidationResult(
            valid=False, error="Arquivo sem extensão", error_code="NO_EXTENSION"
        )

    if extension not in ALL_ALLOWED_EXTENSIONS:
        return ValidationResult(
            valid=False,
            error=(
                f'Extensão "{extension}" não permitida. '
                f"Permitidos: {', '.join(ALL_ALLOWED_EXTENSIONS)}"
            ),
            error_code="INVALID_EXTENSION",
        )

    return ValidationResult(valid=True)


def validate_file_size(file_size: int) -> ValidationResult:
    if file_size <= 0:
        return ValidationResult(
            valid=False,
            error="Tamanho do arquivo inválido",
            error_code="INVALID_FILE_SIZE",
        )

    if file_size > MAX_FILE_SIZE:
        return ValidationResult(
            valid=False,
            error=(
                f"Arquivo muito grande ({format_file_size(file_size)}). "
                f"Máximo: {format_file_size(MAX_FILE_SIZE)}"
            ),
            error_code="FILE_TOO_LARGE",
        )

    return ValidationResult(valid=True)


def validate_mime_type(mime_type: str) -> ValidationResult:
    if not mime_type or not mime_type.strip():
        return ValidationResult(
            valid=False,
            error="Tipo MIME é obrigatório",
            error_code="MIME_TYPE_REQUIRED",
        )

    if mime_type not in MIME_TO_FILE_KIND:
        return ValidationResult(
            valid=False,
            error=f'Tipo de arquivo "{mime_type}" não permitido',
            error_code="INVALID_MIME_TYPE",
        )

    return ValidationResult(valid=True)


def validate_file(
    file_name: str, file_size: int, mime_type: str | None = None
) -> FileValidation:
    """
    Validate complete file metadata.

    Checks run in order: extension, size, MIME type (only when given).
    The first failing check wins. On success the FileKind is derived from
    the MIME type when known, else from the extension.
    """
    for result in (
        validate_file_extension(file_name),
        validate_file_size(file_size),
    ):
        if not result.valid:
            return FileValidation(
                valid=False,
                error=result.error,
                error_code=result.error_code,
                file_name=file_name,
            )

    if mime_type:
        result = validate_mime_type(mime_type)
        if not result.valid:
            return FileValidation(
                valid=False,
                error=result.error,
                error_code=result.error_code,
                file_name=file_name,
            )

    kind = MIME_TO_FILE_KIND.get(mime_type or "") or get_file_kind(file_name)
    return FileValidation(
        valid=True, file_kind=kind, file_size=file_size, file_name=file_name
    )


def validate_attachment_count(
    current_count: int, additional_count: int = 1
) -> ValidationResult:
    total = current_count + additional_count
    if total > MAX_ATTACHMENTS_PER_MESSAGE:
        return ValidationResult(
            valid=False,
            error=(
                f"Máximo {MAX_ATTACHMENTS_PER_MESSAGE} anexos por mensagem "
                f"(atual: {current_count}, adicionando: {additional_count})"
            ),
            error_code="MAX_ATTACHMENTS_EXCEEDED",
        )
    return ValidationResult(valid=True)


def _recent(
    upload_times: list[datetime], now: datetime | None
) -> list[datetime]:
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=1)
    return [ts for ts in upload_times if ts > cutoff]


def check_rate_limit(
    upload_times: list[datetime],
    now: datetime | None = None,
    limit: int = MAX_UPLOADS_PER_HOUR,
) -> ValidationResult:
    """Check that fewer than `limit` uploads happened in the last hour."""
    recent = _recent(upload_times, now)
    if len(recent) >= limit:
        return ValidationResult(
            valid=False,
            error=f"Limite de {limit} uploads por hora excedido ({len(recent)}/{limit})",
            error_code="RATE_LIMIT_EXCEEDED",
        )
    return ValidationResult(valid=True)


def remaining_uploads(
    upload_times: list[datetime],
    now: datetime | None = None,
    limit: int = MAX_UPLOADS_PER_HOUR,
) -> int:
    return max(0, limit - len(_recent(upload_times, now)))


def sanitize_file_name(file_name: str) -> str:
    """
    Make a file name safe for storage paths.

    "My Document (2024).pdf" -> "my-document-2024.pdf"
    "Ação #1.JPG" -> "acao-1.jpg"
    """
    extension = get_file_extension(file_name)
    stem = file_name[: len(file_name) - len(extension)] if extension else file_name

    normalized = unicodedata.normalize("NFD", stem.lower())
    without_marks = "".join(
        ch for ch in normalized if unicodedata.category(ch) != "Mn"
    )
    sanitized = re.sub(r"[^a-z0-9]", "-", without_marks)
    sanitized = re.sub(r"-+", "-", sanitized).strip("-")

    return f"{sanitized or 'arquivo'}{extension}"


def generate_storage_path(
    organization_id: str,
    conversation_id: str,
    file_name: str,
    unique: str | None = None,
) -> str:
    """Build "{org}/{conversation}/{unique}_{sanitized name}"."""
    unique = unique or uuid.uuid4().hex[:12]
    return f"{organization_id}/{conversation_id}/{unique}_{sanitize_file_name(file_name)}"


def format_file_size(num_bytes: int, decimals: int = 2) -> str:
    """Human-readable size: 1024 -> '1 KB', 5242880 -> '5 MB'."""
    if num_bytes <= 0:
        return "0 Bytes"

    sizes = ["Bytes", "KB", "MB", "GB"]
    index = 0
    while num_bytes >= 1024 ** (index + 1) and index < len(sizes) - 1:
        index += 1
    value = round(num_bytes / (1024**index), max(decimals, 0))
    if value == int(value):
        value = int(value)
    return f"{value} {sizes[index]}"
