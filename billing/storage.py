import logging
import os
import uuid

logger = logging.getLogger(__name__)


class BlobStore:
    """Stores uploaded proof artifacts and hands back an opaque reference."""

    def save(self, filename: str, content: bytes) -> str:
        raise NotImplementedError

    def delete(self, reference: str):
        raise NotImplementedError


class LocalBlobStore(BlobStore):

    def __init__(self, root: str):
        self.root = root

    def save(self, filename: str, content: bytes) -> str:
        os.makedirs(self.root, exist_ok=True)
        _, ext = os.path.splitext(filename or "")
        reference = f"{uuid.uuid4().hex}{ext.lower()}"
        with open(os.path.join(self.root, reference), "wb") as fh:
            fh.write(content)
        return reference

    def delete(self, reference: str):
        path = os.path.join(self.root, os.path.basename(reference))
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.warning("Proof blob %s already gone", reference)
