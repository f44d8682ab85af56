from __future__ import annotations

import base64
import hashlib
import io
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Union

LAMBDA_SRC_DIR = Path(__file__).resolve().parent / "lambda_src"

# fixed entry timestamp so identical sources always produce identical bytes
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class CodeArtifact:
    zip_bytes: bytes
    sha256: str  # base64, the format Lambda reports as CodeSha256


def code_sha256(data: bytes) -> str:
    return base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")


def build_artifact(source_dir: Union[str, Path]) -> CodeArtifact:
    """
    Zip a function source directory deterministically: sorted entries, fixed
    timestamps and permissions, no __pycache__. The hash therefore changes
    only when the source does.
    """
    root = Path(source_dir)
    if not root.is_dir():
        raise FileNotFoundError(f"Lambda source directory not found: {root}")

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(p for p in root.rglob("*") if p.is_file()):
            rel = path.relative_to(root)
            if "__pycache__" in rel.parts or path.suffix == ".pyc":
                continue
            info = zipfile.ZipInfo(rel.as_posix(), date_time=_ZIP_EPOCH)
            info.external_attr = 0o644 << 16
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, path.read_bytes())

    data = buf.getvalue()
    return CodeArtifact(zip_bytes=data, sha256=code_sha256(data))


def upload_handler_artifact() -> CodeArtifact:
    return build_artifact(LAMBDA_SRC_DIR / "upload_handler")
