# backend/tapecapture/paths.py
import os
import re
from datetime import datetime

CAPTURE_EXT = "dv"


def slugify(collection_name: str) -> str:
    """'Home Movies 1994' -> 'home-movies-1994'; separators are folded so the folder stays under the root."""
    slug = re.sub(r"[\s/\\]+", "-", collection_name.strip()).lower()
    if slug in ("", ".", ".."):
        slug = "collection"
    return slug


def capture_timestamp(now: datetime) -> str:
    # ISO-8601 UTC with millisecond precision, ":" and "." swapped for "-"
    iso = now.strftime("%Y-%m-%dT%H:%M:%S") + f".{now.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


def build_output_path(collections_dir: str, collection_name: str, now: datetime) -> str:
    base_dir = os.path.join(collections_dir, slugify(collection_name))
    return os.path.join(base_dir, f"capture_{capture_timestamp(now)}.{CAPTURE_EXT}")
