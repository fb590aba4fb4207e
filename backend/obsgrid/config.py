import logging
import os
from pathlib import Path

# データ置き場: コンテナ内は /app/data、ローカル開発は <repo>/data
_container_data = Path("/app/data")
if _container_data.exists():
    DATA_DIR = _container_data
else:
    # backend/obsgrid/config.py → ../../.. = <repo root>
    DATA_DIR = Path(__file__).resolve().parents[2] / "data"

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR") or (DATA_DIR / "uploads"))

# 分類群ごとの計測項目カタログ（Critterbase 互換 API）
CRITTERBASE_API_URL = os.getenv("CRITTERBASE_API_URL", "http://localhost:8080/api")
CATALOG_TIMEOUT_S = float(os.getenv("CATALOG_TIMEOUT_S", "10"))

# 計測項目検索のデバウンス（ミリ秒）
SEARCH_DEBOUNCE_MS = int(os.getenv("SEARCH_DEBOUNCE_MS", "300"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=level or LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
