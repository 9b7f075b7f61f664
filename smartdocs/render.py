# render.py
from datetime import datetime
from typing import Optional

from .models import UploadResult, UploadStatus, ViewSnapshot, utcnow


def format_size(size_bytes: int) -> str:
    """Human-readable size in the dashboard's style, e.g. `245 KB`."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    kilobytes = round(size_bytes / 1024)
    if kilobytes < 1024:
        return f"{kilobytes} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def format_age(moment: datetime, now: Optional[datetime] = None) -> str:
    """Relative age such as `just now`, `2 mins ago` or `1 day ago`."""
    now = now or utcnow()
    seconds = int((now - moment).total_seconds())
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{_plural(minutes, 'min')} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{_plural(hours, 'hour')} ago"
    return f"{_plural(hours // 24, 'day')} ago"


def render_upload_result(result: UploadResult) -> str:
    if result.status == UploadStatus.SUCCESS:
        return f"OK      {result.filename} -> {result.key}"
    label = "REJECTED" if result.status == UploadStatus.VALIDATION_ERROR else "FAILED  "
    return f"{label} {result.filename}: {result.reason}"


def render_snapshot(snapshot: ViewSnapshot, container: str, now: Optional[datetime] = None) -> str:
    """Formats a snapshot as the text of the dashboard's processing view."""
    now = now or utcnow()
    lines = [f"Container: {container}    Processing: {snapshot.pending_count}"]

    if snapshot.is_refreshing:
        lines.append("Refreshing...")
    if snapshot.last_error is not None:
        error = snapshot.last_error
        lines.append(f"Error during {error.operation} ({error.kind.value}): {error.message}")

    for attempt in snapshot.uploads:
        lines.append(f"  ^ {attempt.filename}    Uploading • {format_size(attempt.size_bytes)}")

    if not snapshot.records:
        lines.append("No invoices processing")
        lines.append("Invoices will appear here as they are uploaded.")
    for record in snapshot.records:
        lines.append(
            f"  * {record.key}    Uploaded {format_age(record.last_modified, now)} • {format_size(record.size_bytes)}"
        )

    if snapshot.refreshed_at is not None:
        lines.append(f"Last refreshed {format_age(snapshot.refreshed_at, now)}")
    return "\n".join(lines)
