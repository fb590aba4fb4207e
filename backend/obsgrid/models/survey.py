from sqlalchemy import Integer, String, Date, Column
from .base import Base


class Survey(Base):
    __tablename__ = "surveys"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    # 調査期間（終了日は未定なら null）
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    observers = Column(String, default="")  # カンマ区切り
