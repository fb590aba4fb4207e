from sqlalchemy import Integer, String, Column, ForeignKey, DateTime
from .base import Base


class SampleSite(Base):
    __tablename__ = "sample_sites"
    id = Column(Integer, primary_key=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)


class SampleMethod(Base):
    __tablename__ = "sample_methods"
    id = Column(Integer, primary_key=True)
    sample_site_id = Column(Integer, ForeignKey("sample_sites.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)


class SamplePeriod(Base):
    __tablename__ = "sample_periods"
    id = Column(Integer, primary_key=True)
    sample_method_id = Column(Integer, ForeignKey("sample_methods.id", ondelete="CASCADE"), nullable=False)
    start_at = Column(DateTime, nullable=True)
    end_at = Column(DateTime, nullable=True)
