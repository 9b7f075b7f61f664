# uploads.py
import mimetypes
import re
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ValidationError

# Path separators and control characters never make it into a key.
_UNSAFE_KEY_CHARS = re.compile(r"[\x00-\x1f\x7f/\\]")


class UploadFile(BaseModel):
    """An upload candidate: a file name, its bytes and its declared MIME type."""

    model_config = ConfigDict(frozen=True)

    filename: str
    data: bytes = Field(repr=False)
    content_type: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def resolved_content_type(self) -> Optional[str]:
        """The declared type, or a guess from the file name when none was declared."""
        if self.content_type:
            return self.content_type.split(";", 1)[0].strip().lower()
        return mimetypes.guess_type(self.filename)[0]

    @classmethod
    def from_path(cls, path, content_type: Optional[str] = None) -> "UploadFile":
        path = Path(path)
        return cls(filename=path.name, data=path.read_bytes(), content_type=content_type)


def safe_filename(filename: str) -> str:
    """Returns the base name of `filename` with separators and control characters removed."""
    base_name = re.split(r"[/\\]", filename.strip())[-1]
    return _UNSAFE_KEY_CHARS.sub("", base_name).strip()


def validate_upload(file: UploadFile, max_bytes: int, accepted_types: Iterable[str]) -> str:
    """
    Checks an upload candidate against the local limits.

    :return: The content type the object will be stored with.
    :raises ValidationError: If the file is unnamed, too large or of an unaccepted type.
    """
    if not safe_filename(file.filename):
        raise ValidationError("File name is empty.")

    if file.size_bytes > max_bytes:
        raise ValidationError(
            f"File '{file.filename}' is {file.size_bytes} bytes, which exceeds the {max_bytes} byte limit."
        )

    content_type = file.resolved_content_type
    accepted = {t.lower() for t in accepted_types}
    if content_type is None or content_type not in accepted:
        raise ValidationError(
            f"File '{file.filename}' has unsupported type '{content_type}'. Accepted: {', '.join(sorted(accepted))}."
        )
    return content_type


class KeyGenerator:
    """
    Builds collision-resistant object keys of the form `{stamp}-{filename}`.

    The stamp is a millisecond timestamp that never repeats or goes backwards
    for one generator, so two files with the same name uploaded in the same
    session still get distinct keys.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last_stamp = 0

    def next_stamp(self) -> int:
        stamp = int(self._clock() * 1000)
        if stamp <= self._last_stamp:
            stamp = self._last_stamp + 1
        self._last_stamp = stamp
        return stamp

    def generate(self, filename: str) -> str:
        name = safe_filename(filename) or "upload"
        return f"{self.next_stamp()}-{name}"
