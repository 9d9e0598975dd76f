import mimetypes
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ImageFile(BaseModel):
    name: str
    content_type: str
    data: bytes
    last_modified: datetime = Field(default_factory=_now)

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: str | Path, content_type: str | None = None) -> "ImageFile":
        path = Path(path)
        if content_type is None:
            content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(name=path.name, content_type=content_type, data=path.read_bytes())


class ResizedImage(ImageFile):
    content_type: str = "image/jpeg"
    width: int
    height: int
    original_width: int
    original_height: int
