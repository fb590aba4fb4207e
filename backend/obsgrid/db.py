import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from obsgrid.config import DATA_DIR
# モデル定義側の Base（obsgrid.models.base）を利用してメタデータを統一
from obsgrid.models.base import Base

logger = logging.getLogger(__name__)

# 1) DATABASE_URL が指定されていれば優先（例: postgresql+psycopg://...）
# 2) それ以外は SQLite を使用
_database_url_env = os.getenv("DATABASE_URL")
if _database_url_env:
    SQLALCHEMY_DATABASE_URL = _database_url_env
    _is_sqlite = SQLALCHEMY_DATABASE_URL.startswith("sqlite")
else:
    db_path = DATA_DIR / "app.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    SQLALCHEMY_DATABASE_URL = f"sqlite:///{db_path}"
    _is_sqlite = True

_connect_args = {"check_same_thread": False} if _is_sqlite else {}

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args=_connect_args,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    # パッケージ配下の各モデルモジュールを明示 import してメタデータ登録を確実化
    import obsgrid.models.survey  # noqa: F401
    import obsgrid.models.sampling  # noqa: F401
    import obsgrid.models.observation  # noqa: F401
    import obsgrid.models.measurement  # noqa: F401
    import obsgrid.models.submission  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.debug("database schema ready (%s)", engine.url.render_as_string(hide_password=True))


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
