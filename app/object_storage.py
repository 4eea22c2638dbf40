"""
Opaque object storage for uploaded file bytes.
Objects live on local disk under UUID names and are served from /objects.
"""
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from errors import NotFound, StorageError
from security import validate_path_traversal, sanitize_filename

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    url: str
    public_id: str
    size: int


class LocalObjectStorage:
    """Stores byte buffers on disk and hands back a durable URL."""

    def __init__(self, root: Path, base_url: str = ""):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def url_for(self, public_id: str) -> str:
        return f"{self.base_url}/objects/{public_id}"

    def put(self, data: bytes, name: str) -> StoredObject:
        # UUID names prevent path traversal; the extension is kept for content sniffing
        suffix = Path(sanitize_filename(name)).suffix.lower()
        public_id = f"{uuid.uuid4().hex}{suffix}"
        path = self.root / public_id
        try:
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            logger.error(f"Object write failed for {public_id}: {e}")
            raise StorageError("Could not store file") from e
        return StoredObject(url=self.url_for(public_id), public_id=public_id, size=len(data))

    def path_for(self, public_id: str) -> Path:
        try:
            path = validate_path_traversal(self.root, public_id)
        except ValueError:
            raise NotFound("File not found")
        if not path.is_file():
            raise NotFound("File not found")
        return path

    def delete(self, public_id: str) -> bool:
        try:
            path = validate_path_traversal(self.root, public_id)
        except ValueError:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Could not delete object {public_id}") from e
        return True
