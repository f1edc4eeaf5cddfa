"""Image storage backed by the local upload folder."""
import logging
import os
from typing import Dict, Iterable, List, Optional
from urllib.parse import urljoin
from uuid import uuid4

from werkzeug.utils import secure_filename

from errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}


def allowed_image_extension(filename: str) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in ALLOWED_IMAGE_EXTENSIONS


class ImageStorage:
    """Stores uploads under ``root/<folder>/`` and hands back ``{public_id, url}``.

    ``public_id`` is the path relative to ``root`` and is what ``delete_many``
    expects back. URLs are built from ``base_url`` when configured, otherwise
    from the base passed by the caller (usually the request host).
    """

    def __init__(self, root: str, base_url: Optional[str] = None):
        self.root = root
        self.base_url = base_url
        os.makedirs(self.root, exist_ok=True)

    def build_url(self, public_id: str, host_url: Optional[str] = None) -> str:
        base = self.base_url or host_url or "/"
        if not base.endswith("/"):
            base = f"{base}/"
        return urljoin(base, f"uploads/{public_id}")

    def path_for(self, public_id: str) -> str:
        target = os.path.normpath(os.path.join(self.root, public_id))
        if not target.startswith(os.path.normpath(self.root) + os.sep):
            raise ValidationError("Invalid image identifier.")
        return target

    def upload(self, image_file, folder: str, host_url: Optional[str] = None) -> Dict[str, str]:
        if not image_file or not getattr(image_file, "filename", ""):
            raise ValidationError("An image file is required.")

        original_filename = secure_filename(image_file.filename)
        if not original_filename:
            raise ValidationError("Please choose a valid file name.")

        if not allowed_image_extension(original_filename):
            raise ValidationError(
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
            )

        extension = os.path.splitext(original_filename)[1].lower()
        safe_folder = secure_filename(folder) or "misc"
        public_id = f"{safe_folder}/{uuid4().hex}{extension}"
        destination = self.path_for(public_id)

        try:
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            image_file.save(destination)
        except OSError as exc:
            logger.error("Unable to store upload %s: %s", public_id, exc)
            raise StorageError() from exc

        return {"public_id": public_id, "url": self.build_url(public_id, host_url)}

    def upload_many(self, image_files, folder: str, host_url: Optional[str] = None) -> List[Dict[str, str]]:
        uploaded: List[Dict[str, str]] = []
        for image_file in image_files or []:
            if not image_file or not getattr(image_file, "filename", ""):
                continue
            try:
                uploaded.append(self.upload(image_file, folder, host_url))
            except (StorageError, ValidationError):
                self.discard([image["public_id"] for image in uploaded])
                raise
        return uploaded

    def delete(self, public_id: str) -> None:
        target = self.path_for(public_id)
        try:
            os.remove(target)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.error("Unable to delete image %s: %s", public_id, exc)
            raise StorageError("We could not remove the stored images.") from exc

    def delete_many(self, public_ids: Iterable[str]) -> None:
        for public_id in public_ids:
            if public_id:
                self.delete(str(public_id))

    def discard(self, public_ids: Iterable[str]) -> None:
        """Best-effort removal used when rolling back a partial batch."""
        try:
            self.delete_many(public_ids)
        except (StorageError, ValidationError) as exc:
            logger.warning("Unable to discard uploaded images: %s", exc)
