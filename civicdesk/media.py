# GridFS-backed storage for report attachments (voice, image, resolution evidence)

import logging
from typing import Optional

import gridfs
from gridfs.errors import NoFile
from bson import ObjectId
from bson.errors import InvalidId

from . import config
from .errors import BadRequest, NotFound

logger = logging.getLogger(__name__)

MEDIA_KINDS = ("voice", "image", "resolution")


class MediaStore:
    def __init__(self, db, max_bytes: int = config.MEDIA_MAX_BYTES):
        self.fs = gridfs.GridFS(db)
        self.max_bytes = max_bytes

    def store(self, data: bytes, filename: str, content_type: Optional[str], kind: str) -> dict:
        if kind not in MEDIA_KINDS:
            raise BadRequest(f"Unknown media kind '{kind}'")
        if not data:
            raise BadRequest(f"Empty {kind} attachment")
        if len(data) > self.max_bytes:
            raise BadRequest(f"{kind.capitalize()} attachment exceeds {self.max_bytes} bytes")
        fid = self.fs.put(data, filename=filename, content_type=content_type,
                          metadata={"kind": kind})
        logger.info("Stored %s attachment %s (%d bytes)", kind, fid, len(data))
        return {"url": f"/media/{fid}", "id": str(fid)}

    def open(self, media_id: str):
        try:
            return self.fs.get(ObjectId(media_id))
        except (InvalidId, NoFile):
            raise NotFound("Media not found")

    def delete(self, media_id: Optional[str]):
        if not media_id:
            return
        try:
            self.fs.delete(ObjectId(media_id))
            logger.info("Deleted attachment %s", media_id)
        except InvalidId:
            logger.warning("Ignoring delete of malformed media id %r", media_id)
