# backend/obsgrid/services/importing/storage.py
import logging
import uuid
from pathlib import Path

from obsgrid import config

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".csv"}
CSV_CONTENT_TYPES = {"text/csv", "application/csv", "application/vnd.ms-excel", "text/plain", "application/octet-stream"}


class UploadRejected(Exception):
    pass


def check_csv_upload(filename: str | None, content: bytes, content_type: str | None = None) -> None:
    if not filename:
        raise UploadRejected("No file provided")
    if Path(filename).suffix.lower() not in ALLOWED_EXTENSIONS:
        raise UploadRejected(f"Invalid file type: {filename} (only .csv is accepted)")
    if content_type and content_type.split(";")[0].strip().lower() not in CSV_CONTENT_TYPES:
        raise UploadRejected(f"Invalid content type: {content_type}")
    if not content.strip():
        raise UploadRejected("The uploaded file is empty")


def store_upload(survey_id: int, filename: str, content: bytes) -> Path:
    # サーバ側のファイル名は衝突しないよう UUID で採番
    out_dir = Path(config.UPLOAD_DIR) / f"survey_{survey_id}"
    out_dir.mkdir(parents=True, exist_ok=True)
    out = out_dir / f"{uuid.uuid4().hex}.csv"
    out.write_bytes(content)
    logger.debug("stored upload %s as %s", filename, out)
    return out
