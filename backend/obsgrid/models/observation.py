from sqlalchemy import Integer, String, Column, ForeignKey, Date, Float
from .base import Base


class Observation(Base):
    __tablename__ = "observations"
    id = Column(Integer, primary_key=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), nullable=False)
    # 種（ITIS TSN）
    itis_tsn = Column(Integer, nullable=True)
    itis_scientific_name = Column(String, nullable=True)
    # 調査地点 > 手法 > 期間 の階層（偶発的記録はすべて null）
    survey_sample_site_id = Column(Integer, ForeignKey("sample_sites.id", ondelete="SET NULL"), nullable=True)
    survey_sample_method_id = Column(Integer, ForeignKey("sample_methods.id", ondelete="SET NULL"), nullable=True)
    survey_sample_period_id = Column(Integer, ForeignKey("sample_periods.id", ondelete="SET NULL"), nullable=True)
    count = Column(Integer, nullable=True)
    observation_date = Column(Date, nullable=True)
    observation_time = Column(String, nullable=True)  # HH:MM[:SS]
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    comment = Column(String, default="")
