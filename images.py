# images.py
"""
Local-disk image storage.

Behavior:
 - Originals live in upload_dir under "<nanosecond timestamp>_<client name>".
 - Resized variants live in cache_dir under "<width>x<height>_<name>".
 - Resizing uses Pillow's Lanczos filter; the output format follows the file extension.
 - Files are written to a hidden temp file next to the target and renamed into
   place, so readers never see a partial file.
"""

import os
import tempfile
import time
from typing import BinaryIO, Callable, List

from PIL import Image, UnidentifiedImageError

TMP_PREFIX = ".tmp-"


class ImageNotFoundError(FileNotFoundError):
    pass


class InvalidFilenameError(ValueError):
    pass


def safe_name(filename: str) -> str:
    """Reject anything that is not a plain file name."""
    if (
        not filename
        or filename in (".", "..")
        or "/" in filename
        or "\\" in filename
        or "\x00" in filename
    ):
        raise InvalidFilenameError(filename)
    return filename


def write_atomic(path: str, write: Callable[[BinaryIO], None]) -> None:
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), prefix=TMP_PREFIX)
    try:
        with os.fdopen(fd, "wb") as out:
            write(out)
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


class ImageStore:
    def __init__(self, upload_dir: str, cache_dir: str):
        self.upload_dir = upload_dir
        self.cache_dir = cache_dir

    def ensure_dirs(self):
        for d in (self.upload_dir, self.cache_dir):
            os.makedirs(d, mode=0o755, exist_ok=True)

    # -------------------------
    # Originals
    # -------------------------
    def original_path(self, filename: str) -> str:
        return os.path.join(self.upload_dir, safe_name(filename))

    def exists(self, filename: str) -> bool:
        return os.path.isfile(self.original_path(filename))

    def save_upload(self, fh: BinaryIO, client_filename: str) -> str:
        """Copy an uploaded stream to upload_dir and return the stored name."""
        base = os.path.basename((client_filename or "").replace("\\", "/")) or "image"
        stored = safe_name(f"{time.time_ns()}_{base}")

        def copy(out):
            while True:
                chunk = fh.read(1 << 16)
                if not chunk:
                    break
                out.write(chunk)

        write_atomic(os.path.join(self.upload_dir, stored), copy)
        return stored

    def list_images(self) -> List[str]:
        if not os.path.isdir(self.upload_dir):
            return []
        return sorted(
            fn for fn in os.listdir(self.upload_dir)
            if not fn.startswith(TMP_PREFIX) and os.path.isfile(os.path.join(self.upload_dir, fn))
        )

    # -------------------------
    # Resized variants
    # -------------------------
    def variant_path(self, filename: str, width: int, height: int) -> str:
        return os.path.join(self.cache_dir, f"{width}x{height}_{safe_name(filename)}")

    def resize(self, filename: str, width: int, height: int) -> str:
        """
        Resize an original to exactly width x height and write it to cache_dir.
        Raises ImageNotFoundError if the original is missing or cannot be decoded;
        OSError / ValueError from saving propagate.
        """
        src_path = self.original_path(filename)
        try:
            with Image.open(src_path) as src:
                src.load()
                resized = src.resize((width, height), Image.Resampling.LANCZOS)
        except (OSError, UnidentifiedImageError, Image.DecompressionBombError) as e:
            raise ImageNotFoundError(filename) from e

        dst_path = self.variant_path(filename, width, height)
        ext = os.path.splitext(dst_path)[1].lower()
        fmt = Image.registered_extensions().get(ext)
        if fmt is None:
            raise ValueError(f"unknown file extension: {ext!r}")
        if resized.mode not in ("RGB", "L") and fmt == "JPEG":
            resized = resized.convert("RGB")
        write_atomic(dst_path, lambda out: resized.save(out, format=fmt))
        return dst_path
