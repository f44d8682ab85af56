from __future__ import annotations

import re
import secrets
import string
from typing import Optional

BUCKET_PREFIX = "s3uplink"
MAX_BUCKET_NAME = 63
SUFFIX_LENGTH = 6

_ALPHABET = string.ascii_lowercase + string.digits


def slugify(value: str) -> str:
    """Lowercase, [a-z0-9-] only, no leading/trailing/doubled hyphens."""
    slug = re.sub(r"[^a-z0-9-]", "-", (value or "").lower())
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-")


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_bucket_name(instance_name: str, production: bool = False, suffix: Optional[str] = None) -> str:
    """
    Bucket name for an instance.

    Non-production names are stable ("s3uplink-<slug>") so repeated local runs
    reuse one bucket; production appends a random suffix since bucket names
    are global. Result is 1-63 chars of [a-z0-9-] with no leading, trailing
    or doubled hyphen, whatever the input.
    """
    slug = slugify(instance_name)
    base = f"{BUCKET_PREFIX}-{slug}" if slug else BUCKET_PREFIX

    if not production:
        return base[:MAX_BUCKET_NAME].rstrip("-")

    tail = slugify(suffix if suffix is not None else random_suffix()) or random_suffix()
    tail = tail[:SUFFIX_LENGTH]
    head = base[: MAX_BUCKET_NAME - len(tail) - 1].rstrip("-")
    return f"{head}-{tail}"
